from creditsync.providers.processor.stripe_directory import (
    CustomerDirectory,
    StripeCustomerDirectory,
    build_customer_directory,
    configure_stripe,
)
from creditsync.providers.processor.stripe_events import parse_stripe_event

__all__ = [
    "CustomerDirectory",
    "StripeCustomerDirectory",
    "build_customer_directory",
    "configure_stripe",
    "parse_stripe_event",
]
