"""
Startup command templates.

A container's startup script may reference variables as {{NAME}}. Values
come from the container's own startup variables plus the variables the
control plane derives from its allocations and limits:

    SERVER_IP, SERVER_PORT   primary allocation
    SERVER_MEMORY            memory limit in MB
"""

import re
from typing import Dict, Optional

from errors import ValidationFailed

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
VARIABLE_NAME = re.compile(r"^[A-Z][A-Z0-9_]*$")


def validate_variables(variables: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Variable names are upper-case identifiers; values are coerced to strings"""
    result = {}
    for name, value in (variables or {}).items():
        if not VARIABLE_NAME.match(name):
            raise ValidationFailed(f"Invalid startup variable name '{name}'")
        if value is None:
            raise ValidationFailed(f"Startup variable '{name}' has no value")
        result[name] = str(value)
    return result


def build_environment(variables: Optional[Dict[str, str]], primary: Optional[dict], memory_limit: int) -> Dict[str, str]:
    """Container environment: user variables overlaid with the derived ones"""
    env = validate_variables(variables)
    env["SERVER_MEMORY"] = str(memory_limit)
    if primary is not None:
        env["SERVER_IP"] = primary["ip"]
        env["SERVER_PORT"] = str(primary["port"])
    return env


def render_startup_command(template: Optional[str], environment: Dict[str, str]) -> Optional[str]:
    """
    Substitute {{NAME}} placeholders.

    Raises:
        ValidationFailed: a placeholder has no value
    """
    if not template:
        return None

    missing = sorted({name for name in PLACEHOLDER.findall(template) if name not in environment})
    if missing:
        raise ValidationFailed(f"Startup command references undefined variable(s): {', '.join(missing)}")

    return PLACEHOLDER.sub(lambda match: environment[match.group(1)], template)
