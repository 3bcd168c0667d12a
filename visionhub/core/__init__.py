from visionhub.core.config import get_config
from visionhub.core.logging import setup_logging

__all__ = ["get_config", "setup_logging"]
