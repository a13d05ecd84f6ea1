"""HTTP blueprints for the warranty API."""

from .batches import batches_bp
from .claims import claims_bp
from .public import public_bp
from .warranties import warranties_bp

__all__ = ["batches_bp", "claims_bp", "public_bp", "warranties_bp"]
