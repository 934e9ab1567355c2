from __future__ import annotations

import threading

import pytest

from shelf_finder.auth.identity import IdentityProvider, anonymous_sign_in
from shelf_finder.errors import IdentityTimeout, Unauthenticated


def test_anonymous_ids_are_unique() -> None:
    a, b = anonymous_sign_in(), anonymous_sign_in()
    assert a.startswith("anon-")
    assert a != b


def test_require_actor_without_sign_in() -> None:
    with pytest.raises(Unauthenticated):
        IdentityProvider().require_actor()
    assert IdentityProvider("user-a").require_actor() == "user-a"


def test_ensure_actor_signs_in_once() -> None:
    calls = []

    def sign_in() -> str:
        calls.append(1)
        return "user-x"

    identity = IdentityProvider(sign_in=sign_in)
    assert identity.ensure_actor(timeout=2) == "user-x"
    assert identity.ensure_actor(timeout=2) == "user-x"
    assert identity.current == "user-x"
    assert len(calls) == 1


def test_late_sign_in_is_kept_after_timeout() -> None:
    release = threading.Event()
    done = threading.Event()

    def slow() -> str:
        release.wait(5)
        done.set()
        return "late-user"

    identity = IdentityProvider(sign_in=slow)
    with pytest.raises(IdentityTimeout):
        identity.ensure_actor(timeout=0.05)
    assert identity.current is None

    release.set()
    assert identity.ensure_actor(timeout=5) == "late-user"
    assert done.is_set()


def test_empty_sign_in_is_unauthenticated() -> None:
    identity = IdentityProvider(sign_in=lambda: "")
    with pytest.raises(Unauthenticated):
        identity.ensure_actor(timeout=2)


def test_sign_out_clears_actor() -> None:
    identity = IdentityProvider("user-a")
    identity.sign_out()
    assert identity.current is None
