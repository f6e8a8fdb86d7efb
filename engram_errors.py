"""Error taxonomy for the Engram injector."""


class EngramError(Exception):
    pass


class ConfigError(EngramError, ValueError):
    """Invalid EngramConfig / BackBoneConfig. Raised before anything is allocated."""


class ShapeMismatch(EngramError, ValueError):
    """hidden_states and token_ids disagree on batch/sequence length, or width != hidden_size."""


class UseAfterDestroy(EngramError, RuntimeError):
    """An operation was called on a destroyed EngramContext."""
