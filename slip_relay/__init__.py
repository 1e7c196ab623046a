"""Payment relay between a marina checkout front-end, Stripe and the reservation ledger."""

__version__ = "1.0.0"
