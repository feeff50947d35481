from .loyalty_service import LoyaltyService
from .customer_service import CustomerService
from .station_service import StationService
from .payment_service import PaymentService
from .booking_service import BookingService
from .report_service import ReportOptions, ReportService

__all__ = [
    "LoyaltyService",
    "CustomerService",
    "StationService",
    "PaymentService",
    "BookingService",
    "ReportOptions",
    "ReportService",
]
