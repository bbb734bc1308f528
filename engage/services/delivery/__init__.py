from engage.services.delivery.base import DeliveryProvider, DeliveryReceipt
from engage.services.delivery.whatsapp_cloud import WhatsAppCloudProvider

__all__ = ["DeliveryProvider", "DeliveryReceipt", "WhatsAppCloudProvider"]
