import logging
from typing import Callable, TypeVar

from kubernetes.client.rest import ApiException
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from vdbop.config import get_operator_config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, ApiException) and err.status == 404


def is_conflict(err: BaseException) -> bool:
    return isinstance(err, ApiException) and err.status == 409


def _log_conflict(retry_state):
    logger.info(f"Conflict on update, retrying (attempt {retry_state.attempt_number})")


def retry_on_conflict(fn: Callable[[], T], attempts: int | None = None) -> T:
    """Run fn, re-running it while it fails with a 409 conflict.

    fn must re-read the object it updates on every call. The last conflict
    is re-raised once the attempts are used up.
    """
    cfg = get_operator_config().retry
    retryer = Retrying(
        retry=retry_if_exception(is_conflict),
        stop=stop_after_attempt(attempts or cfg.conflict_attempts),
        wait=wait_exponential(multiplier=cfg.conflict_initial_delay, max=cfg.conflict_max_delay),
        before_sleep=_log_conflict,
        reraise=True,
    )
    return retryer(fn)
