from .input_validator import InputValidator
