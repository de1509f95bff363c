"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ConfigurationError(DomainException):
    """Pricing configuration is missing or broken for a whole computation"""

    pass


class RuleSkipped(DomainException):
    """A single reduction rule cannot be evaluated and is left out of the result"""

    def __init__(self, rule_code: str, reason: str):
        super().__init__(f"Rule {rule_code} skipped: {reason}")
        self.rule_code = rule_code
        self.reason = reason


class LockViolation(DomainException):
    """Attempt to modify a decision tree that is already locked"""

    pass
