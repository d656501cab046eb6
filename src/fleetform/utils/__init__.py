"""Utility modules for logging, errors and retries."""

from fleetform.utils.retry import RetryStrategy, with_retry, no_retry
from fleetform.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    EngineError,
    ConfigurationError,
    CycleError,
    UnresolvedReferenceError,
    InvalidAttributeError,
    CredentialError,
    StateError,
    ConflictError,
    LockBusyError,
    ProviderError,
    ResourceNotFoundError,
    OperationTimeoutError,
    ErrorHandler,
    error_handler
)
from fleetform.utils.logging import get_logger, setup_logging, LogContext
from fleetform.utils.aws_client import AWSClientManager, AWSCredentials

__all__ = [
    # Retry
    'RetryStrategy',
    'with_retry',
    'no_retry',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'EngineError',
    'ConfigurationError',
    'CycleError',
    'UnresolvedReferenceError',
    'InvalidAttributeError',
    'CredentialError',
    'StateError',
    'ConflictError',
    'LockBusyError',
    'ProviderError',
    'ResourceNotFoundError',
    'OperationTimeoutError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',

    # AWS
    'AWSClientManager',
    'AWSCredentials',
]
