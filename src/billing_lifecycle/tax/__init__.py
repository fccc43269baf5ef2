from billing_lifecycle.tax.rates import StaticTaxRateProvider, TaxRate, TaxRateProvider

__all__ = ["StaticTaxRateProvider", "TaxRate", "TaxRateProvider"]
