"""Core types shared by every layer: results, exit codes, config, cancellation."""

from .cancel import CancelToken, Deadline
from .config import ConfigError, PipelineConfig, load_config
from .errors import ErrorCode
from .result import Err, Ok, Result, is_err, is_ok

__all__ = [
    # cancel
    "CancelToken",
    "Deadline",
    # config
    "ConfigError",
    "PipelineConfig",
    "load_config",
    # errors
    "ErrorCode",
    # result
    "Err",
    "Ok",
    "Result",
    "is_err",
    "is_ok",
]
