import logging

from ledgerline.exceptions import PartialCompensationFailure

logger = logging.getLogger(__name__)


class CompensationStack:
    """
    Undo actions pushed as each externally visible step succeeds. On failure
    they run newest first; every action is attempted even if an earlier
    one fails.
    """

    def __init__(self):
        self._actions = []

    def __len__(self):
        return len(self._actions)

    def push(self, label: str, func, *args, **kwargs):
        self._actions.append((label, func, args, kwargs))

    def clear(self):
        self._actions = []

    def unwind(self, cause: BaseException):
        failures = []
        while self._actions:
            label, func, args, kwargs = self._actions.pop()
            try:
                func(*args, **kwargs)
            except Exception as exc:
                logger.exception("Compensation step '%s' failed", label)
                failures.append((label, exc))
        if failures:
            logger.error(
                "DATA INTEGRITY RISK: %d compensation step(s) failed after %r: %s",
                len(failures), cause, ", ".join(label for label, _ in failures),
            )
            raise PartialCompensationFailure(cause, failures) from cause
