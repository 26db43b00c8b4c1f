"""
recovery.py - Advice for what to do after a failed compression.

`plan` only recommends; the caller decides whether to retry.
"""

import logging
from dataclasses import dataclass
from typing import Union

from .config import CompressionConfig, degraded
from .errors import (
    AccessDeniedError,
    CompressionCancelled,
    EncryptedInputError,
    InvalidInputError,
    ResourceExhaustedError,
    ResourceKind,
    UnknownError,
)

logger = logging.getLogger(__name__)

CHUNKED_PAGE_THRESHOLD = 20   # timeouts above this page count retry in chunks
TIMEOUT_CHUNK_SIZE = 10
PREMIUM_CHUNK_SIZE = 5

PASSWORD_INPUT = "password"
FILE_ACCESS_INPUT = "file_access"
UNLIMITED_USAGE = "unlimited_usage"


@dataclass(frozen=True)
class RecoveryContext:
    config: CompressionConfig
    file_size: int = 0
    page_count: int = 0
    is_premium_entitled: bool = False
    retry_count: int = 0


@dataclass(frozen=True)
class RetryDegraded:
    config: CompressionConfig


@dataclass(frozen=True)
class RetryChunked:
    chunk_size: int


@dataclass(frozen=True)
class RequestUserInput:
    kind: str


@dataclass(frozen=True)
class SuggestUpgrade:
    feature: str


@dataclass(frozen=True)
class ShowError:
    retryable: bool


@dataclass(frozen=True)
class Cancelled:
    pass


RecoveryAction = Union[RetryDegraded, RetryChunked, RequestUserInput, SuggestUpgrade, ShowError, Cancelled]


def _resource_kind(error: BaseException):
    if isinstance(error, ResourceExhaustedError):
        return error.kind
    if isinstance(error, MemoryError):
        return ResourceKind.MEMORY
    if isinstance(error, TimeoutError):
        return ResourceKind.TIMEOUT
    return None


class RecoveryPlanner:
    """Maps a failure and its context onto a RecoveryAction."""

    def plan(self, error: BaseException, context: RecoveryContext) -> RecoveryAction:
        action = self._plan(error, context)
        logger.debug(f"Recovery for {type(error).__name__}: {action}")
        return action

    def _plan(self, error: BaseException, context: RecoveryContext) -> RecoveryAction:
        if isinstance(error, UnknownError):
            error = error.cause

        kind = _resource_kind(error)

        if kind is ResourceKind.MEMORY:
            return RetryDegraded(degraded(context.config))

        if kind is ResourceKind.TIMEOUT:
            if context.page_count > CHUNKED_PAGE_THRESHOLD:
                return RetryChunked(TIMEOUT_CHUNK_SIZE)
            return RetryDegraded(degraded(context.config))

        if isinstance(error, EncryptedInputError):
            return RequestUserInput(PASSWORD_INPUT)

        if kind is ResourceKind.FILE_TOO_LARGE:
            if context.is_premium_entitled:
                return RetryChunked(PREMIUM_CHUNK_SIZE)
            return SuggestUpgrade(UNLIMITED_USAGE)

        if isinstance(error, InvalidInputError):
            return ShowError(retryable=False)

        if isinstance(error, CompressionCancelled):
            return Cancelled()

        if isinstance(error, (AccessDeniedError, PermissionError)):
            return RequestUserInput(FILE_ACCESS_INPUT)

        return ShowError(retryable=True)


def plan(error: BaseException, context: RecoveryContext) -> RecoveryAction:
    return RecoveryPlanner().plan(error, context)
