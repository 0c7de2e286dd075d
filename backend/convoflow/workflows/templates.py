# /convoflow/workflows/templates.py

"""
Pure template rendering for step content.

`{{identifier}}` placeholders are replaced in a single pass from the data
context. Identifiers with no value are left in place verbatim so a missing
variable shows up in the delivered text instead of silently disappearing.
"""

import json
import re
from typing import Any, Dict

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def stringify(value: Any) -> str:
    """JSON-flavoured string form of a data value."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def render(template: str, data: Dict[str, Any]) -> str:
    if not template or "{{" not in template:
        return template

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        value = data.get(key) if data else None
        if value is None:
            return match.group(0)
        return stringify(value)

    return PLACEHOLDER_PATTERN.sub(_substitute, template)
