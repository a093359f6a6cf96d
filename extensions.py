"""
Shared Flask extension instances, created here and bound in create_app().
"""

from __future__ import annotations

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Per-client limits; storage comes from RATELIMIT_STORAGE_URI (Redis or memory)
limiter = Limiter(key_func=get_remote_address, default_limits=["200 per hour"])
