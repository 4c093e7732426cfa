class NotFoundError(ValueError):
    """Raised by services when a lab-scoped record does not exist (or belongs to another lab)."""
