from .identity import IdentityProvider, anonymous_sign_in

__all__ = ["IdentityProvider", "anonymous_sign_in"]
