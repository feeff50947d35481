"""Mobile-money provider clients."""

from .mpesa import MpesaClient, MpesaError, MpesaCallbackError, StkCallback, normalize_phone_number
from .airtel import AirtelMoneyClient, AirtelMoneyError, AirtelPaymentResult

__all__ = [
    "MpesaClient",
    "MpesaError",
    "MpesaCallbackError",
    "StkCallback",
    "normalize_phone_number",
    "AirtelMoneyClient",
    "AirtelMoneyError",
    "AirtelPaymentResult",
]
