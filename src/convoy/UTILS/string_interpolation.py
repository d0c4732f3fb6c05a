"""
Utilities for string interpolation using host environment variables.
"""
import logging
import re
from typing import Dict

logger = logging.getLogger(__name__)


class InterpolationError(KeyError):
    """A ${VAR:?message} reference to an unset variable, or an unset ${VAR} in strict mode."""


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR:+value}, ${VAR:?message} and $$ as a literal $.
    """
    # Group 1: $$ escape
    # Group 2: VAR name in braces
    # Group 3: - + or ?
    # Group 4: default, value or message
    # Group 5: bare $VAR name
    PATTERN = re.compile(
        r'(\$\$)'
        r'|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+|\?)([^}]*))?\}'
        r'|\$([A-Za-z_][A-Za-z0-9_]*)'
    )

    @classmethod
    def interpolate(cls, template: str, context: Dict[str, str], strict: bool = False) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param strict: Raise instead of substituting an empty string for unset variables.
        :return: The interpolated string.
        :raises InterpolationError: On ${VAR:?message} with VAR unset, or unset VAR when strict.
        """
        def replace(match):
            """
            Internal replacement function for re.sub.
            """
            if match.group(1):
                return '$'
            var_name = match.group(2) or match.group(5)
            modifier = match.group(3)  # None, '-', '+' or '?'
            alt_value = match.group(4) or ''

            value = context.get(var_name)

            if modifier == '-':
                # use default if VAR is unset or empty
                return value if value else alt_value
            if modifier == '+':
                # use alt_value if VAR is set and not empty, else empty
                return alt_value if value else ''
            if modifier == '?':
                if not value:
                    raise InterpolationError(alt_value or f"Variable {var_name} is required")
                return value
            if value is not None:
                return value
            if strict:
                raise InterpolationError(f"Variable {var_name} not found in context")
            # compose semantics: unset resolves to empty
            logger.warning("Variable %s is not set, defaulting to a blank string", var_name)
            return ''

        return cls.PATTERN.sub(replace, template)
