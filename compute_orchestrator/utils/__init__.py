from .id_generator import generate_prefixed_id, generate_short_id
from .retry import create_conflict_retry

__all__ = ["generate_prefixed_id", "generate_short_id", "create_conflict_retry"]
