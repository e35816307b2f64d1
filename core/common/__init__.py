"""Common utilities and shared components for the governance service."""

from common.config import Settings, get_settings
from common.logging import LoggerMixin, get_logger, operator_context, setup_logging
from common.models import BaseModel, BaseRequest, BaseResponse, Page

__all__ = [
    "Settings",
    "get_settings",
    "get_logger",
    "operator_context",
    "LoggerMixin",
    "setup_logging",
    "BaseModel",
    "BaseRequest",
    "BaseResponse",
    "Page",
]
