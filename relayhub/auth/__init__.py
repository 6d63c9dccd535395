from .operator import bearer_scheme, require_operator

__all__ = [
    "bearer_scheme",
    "require_operator",
]
