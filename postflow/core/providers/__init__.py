from postflow.core.providers.paypal import PayPalClient
from postflow.core.providers.razorpay import RazorpayClient
from postflow.core.providers.stripe_client import StripeBillingClient

__all__ = ["PayPalClient", "RazorpayClient", "StripeBillingClient"]
