from autopilot.schemas.webhook import WahaWebhook, WebhookResponse

__all__ = ["WahaWebhook", "WebhookResponse"]
