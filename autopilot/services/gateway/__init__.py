from autopilot.services.gateway.base import MessagingGateway
from autopilot.services.gateway.waha import WahaGateway

__all__ = ["MessagingGateway", "WahaGateway"]
