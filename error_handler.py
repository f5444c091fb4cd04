"""
Downstream Error Handling
=========================
Turns failures of unreliable network operations into explicit results.

Network calls never raise into the command handlers: they are run through
ErrorHandler.run(), which returns an OperationResult the caller branches on.

Based on ZHA patterns:
- Error classification (transient vs permanent), for logging only
- Statistics tracking
- Context preservation
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from bellows.ash import NcpFailure

logger = logging.getLogger("error_handler")


class DeliveryError(Exception):
    """Raised when message delivery fails."""
    pass


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a downstream operation."""
    success: bool
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    transient: bool = False

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, value: Any = None) -> "OperationResult":
        return cls(success=True, value=value)

    @classmethod
    def failed(cls, error: Exception, transient: bool = False) -> "OperationResult":
        return cls(
            success=False,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            transient=transient,
        )


class ErrorHandler:
    """
    Centralized error handling for Zigbee operations.

    Features:
    - Error classification (transient vs permanent)
    - Statistics tracking
    - Context preservation
    """

    # Transient errors: the same call may succeed later
    TRANSIENT_ERRORS = {
        'DELIVERY_FAILED',
        'MAC_NO_ACK',
        'MAC_CHANNEL_ACCESS_FAILURE',
        'ERROR_EXCEEDED_MAXIMUM_ACK_TIMEOUT_COUNT',
        'EZSP_ERROR_NO_BUFFERS',
        'NETWORK_BUSY',
    }

    # Permanent errors: retrying the same call won't help
    PERMANENT_ERRORS = {
        'NOT_FOUND',
        'INVALID_PARAMETER',
        'INVALID_CALL',
        'TABLE_FULL',
    }

    def __init__(self):
        self.stats = {
            'total_attempts': 0,
            'total_successes': 0,
            'total_failures': 0,
            'errors_by_type': {},
        }

    def is_transient(self, error: Exception) -> bool:
        """
        Determine if an error is transient.

        Args:
            error: The exception

        Returns:
            True if error is transient
        """
        error_str = str(error).upper()

        for pattern in self.TRANSIENT_ERRORS:
            if pattern in error_str:
                return True

        for pattern in self.PERMANENT_ERRORS:
            if pattern in error_str:
                return False

        # NcpFailure is usually transient
        if isinstance(error, NcpFailure):
            return True

        if isinstance(error, asyncio.TimeoutError):
            return True

        return False

    def record_error(self, error: Exception):
        """Record error in statistics."""
        error_type = type(error).__name__
        self.stats['errors_by_type'][error_type] = \
            self.stats['errors_by_type'].get(error_type, 0) + 1

    async def run(
            self,
            operation: Callable[..., Awaitable[Any]],
            *args,
            context: Optional[str] = None,
            **kwargs
    ) -> OperationResult:
        """
        Execute an async operation once and capture its outcome.

        Args:
            operation: The async function to execute
            *args: Positional arguments for operation
            context: Optional context string for logging
            **kwargs: Keyword arguments for operation

        Returns:
            OperationResult.ok(value) or OperationResult.failed(error)
        """
        self.stats['total_attempts'] += 1

        try:
            value = await operation(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.record_error(e)
            self.stats['total_failures'] += 1
            transient = self.is_transient(e)
            logger.error(
                f"Operation failed ({'transient' if transient else 'permanent'}): "
                f"{type(e).__name__}: {e}" + (f" ({context})" if context else "")
            )
            return OperationResult.failed(e, transient=transient)

        self.stats['total_successes'] += 1
        return OperationResult.ok(value)

    def get_stats(self) -> Dict[str, Any]:
        """Get error handling statistics."""
        total = self.stats['total_attempts']
        if total > 0:
            success_rate = (self.stats['total_successes'] / total) * 100
        else:
            success_rate = 0

        return {
            **self.stats,
            'errors_by_type': dict(self.stats['errors_by_type']),
            'success_rate': success_rate,
        }


# Global error handler instance
_error_handler = ErrorHandler()


def get_error_handler() -> ErrorHandler:
    return _error_handler


def get_error_stats() -> Dict[str, Any]:
    """Get global error handling statistics."""
    return _error_handler.get_stats()
