from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional

from ..errors import IdentityTimeout, Unauthenticated
from ..logging import get_logger


LOG = get_logger("identity")

SignIn = Callable[[], str]


def anonymous_sign_in() -> str:
    """Local anonymous identity; a hosted provider would hand back its uid."""
    return f"anon-{uuid.uuid4().hex}"


class IdentityProvider:
    """Holds the current actor id and acquires one on demand.

    `ensure_actor` runs the sign-in callable on a worker thread and waits at
    most `timeout` seconds. A sign-in that completes after the timeout still
    lands in `current` for the next caller.
    """

    def __init__(self, actor_id: Optional[str] = None, *, sign_in: Optional[SignIn] = None) -> None:
        self._actor_id = actor_id or None
        self._sign_in = sign_in or anonymous_sign_in
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="identity")
        self._pending = None

    @property
    def current(self) -> Optional[str]:
        return self._actor_id

    def require_actor(self) -> str:
        actor = self._actor_id
        if not actor:
            raise Unauthenticated()
        return actor

    def _run_sign_in(self) -> str:
        actor = self._sign_in()
        if not actor:
            raise Unauthenticated("Sign-in returned no actor id")
        with self._lock:
            self._actor_id = actor
            self._pending = None
        LOG.info(f"Signed in as {actor}")
        return actor

    def ensure_actor(self, timeout: float = 8.0) -> str:
        if self._actor_id:
            return self._actor_id
        with self._lock:
            if self._pending is None:
                LOG.debug("No actor yet; starting anonymous sign-in")
                self._pending = self._pool.submit(self._run_sign_in)
            pending = self._pending
        try:
            return pending.result(timeout=timeout)
        except FutureTimeout as exc:
            LOG.warning(f"Sign-in did not finish within {timeout:.1f}s")
            raise IdentityTimeout() from exc
        except Exception:
            with self._lock:
                if self._pending is pending:
                    self._pending = None
            raise

    def sign_out(self) -> None:
        with self._lock:
            self._actor_id = None
        LOG.info("Signed out")
