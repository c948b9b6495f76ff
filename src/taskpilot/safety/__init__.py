from taskpilot.safety.input_validator import InputValidator, ValidationResult, raise_for_invalid

__all__ = ["InputValidator", "ValidationResult", "raise_for_invalid"]
