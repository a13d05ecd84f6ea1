from .notification_service import NotificationService
from .warranty_store import WarrantyStore
from .batch_service import BatchService
from .activation_service import ActivationService
from .claim_service import ClaimService
from .repair_ticket_service import RepairTicketService
from .attachment_service import AttachmentService
from .public_warranty_service import PublicWarrantyService

__all__ = [
    "NotificationService",
    "WarrantyStore",
    "BatchService",
    "ActivationService",
    "ClaimService",
    "RepairTicketService",
    "AttachmentService",
    "PublicWarrantyService",
]
