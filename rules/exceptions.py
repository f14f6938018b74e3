class RuleDefinitionError(ValueError):
    """Raised when a rule, condition or action definition cannot be accepted."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors or []
