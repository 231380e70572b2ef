"""
Validation Module

Validates configuration and episode tables before tabulation.

Exports:
    - validate_input: Validate an episode table against a config (report)
    - validate_breaks / validate_width: Configuration checks
    - validate_episodes: Episode row checks (nulls, exit >= entry)
    - ValidationError: Base error
    - ConfigurationError: Bad breaks, width, fields or states
    - DataInvariantError: Bad episode rows
"""

from .input_validation import (
    validate_input,
    validate_breaks,
    validate_width,
    validate_fields,
    validate_episodes,
    ValidationError,
    ConfigurationError,
    DataInvariantError,
    InputValidationReport,
)

__all__ = [
    'validate_input',
    'validate_breaks',
    'validate_width',
    'validate_fields',
    'validate_episodes',
    'ValidationError',
    'ConfigurationError',
    'DataInvariantError',
    'InputValidationReport',
]
