from autopilot.services.llm.base import GeneratedReply, MediaAnalysis, OutboundMedia, ResponseGenerator
from autopilot.services.llm.openai_generator import OpenAIResponseGenerator

__all__ = ["GeneratedReply", "MediaAnalysis", "OutboundMedia", "ResponseGenerator", "OpenAIResponseGenerator"]
