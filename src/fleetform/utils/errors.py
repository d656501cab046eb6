"""Error handling framework for planning, apply and fleet operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from fleetform.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur in the engine."""
    CONFIGURATION = "configuration"
    STATE = "state"
    CONFLICT = "conflict"
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    CREDENTIAL = "credential"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Node failed but independent branches continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class EngineError(Exception):
    """Base exception for engine errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize engine error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'aws_service': self.context.aws_service,
                'aws_operation': self.context.aws_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(EngineError):
    """Invalid desired-state declaration. Raised before anything executes."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CycleError(ConfigurationError):
    """Resource references form a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = cycle
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            context=ErrorContext(resource_id=cycle[0] if cycle else None),
            suggestions=['Remove one of the references forming the cycle'],
            **kwargs
        )


class UnresolvedReferenceError(ConfigurationError):
    """A reference names a resource that is not declared."""

    def __init__(self, consumer: str, target: str, **kwargs):
        self.consumer = consumer
        self.target = target
        super().__init__(
            f"Resource '{consumer}' references '{target}' which is not declared",
            context=ErrorContext(resource_id=consumer),
            **kwargs
        )


class InvalidAttributeError(ConfigurationError):
    """An attribute or referenced output is not valid for its kind."""
    pass


class CredentialError(EngineError):
    """Error related to platform credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateError(EngineError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.STATE)
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


class ConflictError(StateError):
    """State record token did not match. The caller must re-plan."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', ['Re-run plan against the current state'])
        super().__init__(
            message,
            category=ErrorCategory.CONFLICT,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class LockBusyError(StateError):
    """Scope lock is held by another run."""
    pass


class ProviderError(EngineError):
    """Remote platform call failed. Local to one node."""

    def __init__(self, message: str, retryable: bool = False, **kwargs):
        kwargs.setdefault('category', ErrorCategory.PROVIDER)
        kwargs.setdefault('severity', ErrorSeverity.ERROR)
        super().__init__(message, **kwargs)
        self.retryable = retryable


class ResourceNotFoundError(ProviderError):
    """Remote object does not exist."""
    pass


class OperationTimeoutError(ProviderError):
    """Remote call or health check timed out. Transient until retries run out."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('retryable', True)
        super().__init__(message, category=ErrorCategory.TIMEOUT, **kwargs)


class ErrorHandler:
    """Converts AWS and other exceptions into the engine taxonomy."""

    NOT_FOUND_CODES = {
        'InvalidGroup.NotFound',
        'InvalidLaunchTemplateId.NotFound',
        'InvalidLaunchTemplateName.NotFoundException',
        'LoadBalancerNotFound',
        'TargetGroupNotFound',
        'ListenerNotFound',
        'RuleNotFound',
        'ValidationError.NotFound',
    }

    RETRYABLE_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'Throttling',
        'ThrottlingException',
        'RequestLimitExceeded',
        'InternalError',
        'InternalFailure',
        'ResourceInUse',
        'ScalingActivityInProgress',
        'DependencyViolation',
    }

    CREDENTIAL_CODES = {
        'InvalidClientTokenId',
        'ExpiredToken',
        'AuthFailure',
        'UnrecognizedClientException',
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> EngineError:
        """Convert an exception raised by a provider call to an EngineError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            EngineError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, EngineError):
            return error

        if isinstance(error, ClientError):
            return self.handle_client_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return CredentialError(
                message='No usable AWS credentials found',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile flag'
                ]
            )

        if isinstance(error, TimeoutError):
            return OperationTimeoutError(
                f"Operation timed out: {error}",
                context=context,
                cause=error
            )

        if isinstance(error, ConnectionError):
            return ProviderError(
                f"Network error: {error}",
                retryable=True,
                context=context,
                cause=error
            )

        return ProviderError(
            message=str(error),
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def handle_client_error(self, error: ClientError, context: ErrorContext) -> EngineError:
        """Map a botocore ClientError onto the taxonomy by error code."""
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = getattr(error, 'operation_name', None)

        if error_code in self.NOT_FOUND_CODES:
            return ResourceNotFoundError(
                f"{error_code}: {error_message}",
                context=context,
                cause=error
            )

        if error_code in self.CREDENTIAL_CODES:
            return CredentialError(
                f"AWS credentials rejected ({error_code}): {error_message}",
                context=context,
                cause=error
            )

        return ProviderError(
            f"AWS Error ({error_code}): {error_message}",
            retryable=error_code in self.RETRYABLE_CODES,
            context=context,
            cause=error,
            suggestions=[f'AWS Request ID: {context.request_id}'] if context.request_id else []
        )

    def log_error(self, error: EngineError):
        """Log an error with appropriate level."""
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
