"""
Utilities for string interpolation using environment variables and project properties.
"""
import re
from typing import Dict, Optional

# Pattern: ${VAR:-default} or ${VAR:+value} or ${VAR}
# Group 1: VAR name
# Group 2: - or +
# Group 3: default or value
VARIABLE_PATTERN = re.compile(r'\$\{([^}:]+)(?::(-|\+)([^}]*))?\}')

# A value consisting of exactly one property reference
PROPERTY_REFERENCE_PATTERN = re.compile(r'^\$\{([^}]+)\}$')


def extract_property_name(value: str) -> Optional[str]:
    """
    Returns the property name if the value is a single '${name}' reference, None otherwise.
    """
    match = PROPERTY_REFERENCE_PATTERN.match(value)
    return match.group(1) if match else None


class EnvironmentInterpolator:
    """
    Utility for interpolating variables in strings.
    Supports ${VAR}, ${VAR:-default} and ${VAR:+value}.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str], strict: bool = True) -> str:
        """
        Interpolates variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The variables to substitute.
        :param strict: If False, unknown ${VAR} references are kept as they are.
        :return: The interpolated string.
        :raises KeyError: If strict and a variable is not found and no default is provided.
        """
        def replace(match):
            """
            Internal replacement function for re.sub.
            """
            var_name = match.group(1)
            modifier = match.group(2)
            alt_value = match.group(3)

            value = context.get(var_name)

            if modifier == '-':
                # ${VAR:-default} -> use default if VAR is unset or empty
                return value if value else alt_value
            elif modifier == '+':
                # ${VAR:+value} -> use alt_value if VAR is set and not empty, else empty
                return alt_value if value else ''
            if value is not None:
                return value
            if strict:
                raise KeyError(f"Variable {var_name} not found in context")
            return match.group(0)

        return VARIABLE_PATTERN.sub(replace, template)
