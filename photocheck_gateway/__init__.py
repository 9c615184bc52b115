from .app import GatewayConfig, create_app
from .upload_processor import InitiateResult, ProcessResult, UploadProcessor, transition

__all__ = [
    "GatewayConfig",
    "InitiateResult",
    "ProcessResult",
    "UploadProcessor",
    "create_app",
    "transition",
]
