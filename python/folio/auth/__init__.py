"""Authentication module.

Provides the shared-secret admin guard applied to every API route.
"""

from folio.auth.middleware import ADMIN_HEADER, AdminAuthMiddleware

__all__ = [
    "ADMIN_HEADER",
    "AdminAuthMiddleware",
]
