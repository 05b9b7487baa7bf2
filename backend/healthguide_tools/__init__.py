from .core_tools import HealthGuideToolset, register_tools
from .gateway import BookingGateway, PostgrestBookingGateway, SQLiteBookingGateway
from .offline_resources import offline_resources

__all__ = [
    "BookingGateway",
    "HealthGuideToolset",
    "PostgrestBookingGateway",
    "SQLiteBookingGateway",
    "offline_resources",
    "register_tools",
]
