from .enums import RaffleStatus, TicketStatus, OrderStatus, JobStatus, EventType
from .raffles import Raffle, PackagePrice
from .inventory import InventoryBlock, TicketRange, GenerationJob
from .orders import Order
from .customers import Customer
from .draws import WinnerDraw, ArchivedSummary
from .events import DomainEvent

__all__ = [
    'RaffleStatus', 'TicketStatus', 'OrderStatus', 'JobStatus', 'EventType',
    'Raffle', 'PackagePrice',
    'InventoryBlock', 'TicketRange', 'GenerationJob',
    'Order', 'Customer',
    'WinnerDraw', 'ArchivedSummary',
    'DomainEvent',
]
