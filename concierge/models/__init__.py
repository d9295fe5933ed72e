"""SQLAlchemy ORM models.

Individual models should be imported explicitly:
    from concierge.models.conversation import Conversation

All models are imported here so ``create_all`` sees every table.
"""

from concierge.models.availability import AvailabilitySchedule
from concierge.models.booking import Booking
from concierge.models.conversation import Conversation
from concierge.models.customer import Customer
from concierge.models.message import Message
from concierge.models.product import Product
from concierge.models.reservation import Reservation
from concierge.models.tenant import Tenant

__all__ = [
    "Tenant",
    "Customer",
    "Conversation",
    "Message",
    "AvailabilitySchedule",
    "Booking",
    "Product",
    "Reservation",
]
