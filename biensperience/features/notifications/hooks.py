"""
Post-commit hooks: side effects that run only after the core transaction
has committed. A failing hook is logged and reported, never raised.
"""

import logging
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


class PostCommitHooks:
    def __init__(self):
        self._hooks: List[Tuple[str, Callable[[], Any]]] = []

    def add(self, name: str, fn: Callable[[], Any]) -> None:
        self._hooks.append((name, fn))

    def __len__(self) -> int:
        return len(self._hooks)

    def run(self) -> Dict[str, Any]:
        """Run every hook in order.

        Returns:
            {"results": {name: value}, "errors": [{hook, error}]}
        """
        results: Dict[str, Any] = {}
        errors: List[Dict[str, str]] = []
        for name, fn in self._hooks:
            try:
                results[name] = fn()
            except Exception as exc:
                logger.error("[hooks] post-commit hook failed", exc_info=True, extra={"hook": name})
                errors.append({"hook": name, "error": str(exc) or type(exc).__name__})
        self._hooks = []
        return {"results": results, "errors": errors}
