"""Parameter text parsing and resolution against a job's declared parameters."""

import logging
from typing import Dict, Iterable, Optional

from .models import ParameterDefinition, ParameterSet

logger = logging.getLogger(__name__)


def parse_parameters(text: Optional[str]) -> Dict[str, str]:
    """
    Parse ``key=value`` lines.

    Everything after a ``#`` is a comment. Lines without ``=`` are ignored,
    values may themselves contain ``=``, and the last duplicate key wins.
    """
    properties: Dict[str, str] = {}
    if not text:
        return properties
    for line in text.split("\n"):
        line = line.split("#", 1)[0]
        key, sep, value = line.partition("=")
        if not sep:
            continue
        properties[key.strip()] = value.strip()
    return properties


def resolve_parameters(text: Optional[str], schema: Iterable[ParameterDefinition],
                       echo: bool = False) -> ParameterSet:
    """
    Build the parameter set for a job from free-text overrides.

    Each declared parameter takes its override when present, else its
    default. Overrides the job does not declare are dropped with a warning.
    """
    overrides = parse_parameters(text)
    values: Dict[str, str] = {}
    for definition in schema:
        if definition.name in values:
            continue
        if definition.name in overrides:
            values[definition.name] = overrides[definition.name]
            if echo:
                logger.info("using variable: '%s' -> '%s'", definition.name, values[definition.name])
        else:
            values[definition.name] = definition.default
            if echo:
                logger.info("using default for: '%s' -> '%s'", definition.name, definition.default)

    for name in overrides:
        if name in values:
            continue
        logger.warning("Ignoring parameter '%s': not declared by the job", name)

    return ParameterSet(values=values)
