from .settings import FederationSettings, GrantableScopes

__all__ = ["FederationSettings", "GrantableScopes"]
