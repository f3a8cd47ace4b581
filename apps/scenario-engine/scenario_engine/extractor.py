"""Maps step output into named variables."""

from __future__ import annotations

import re
from typing import Iterable, Optional

import structlog

from .errors import ExtractionError
from .models import Extractor, Response
from .variables import VariableStore

LOGGER = structlog.get_logger("scenario_engine")


def extract(
    response: Response,
    extractors: Iterable[Extractor],
    store: Optional[VariableStore] = None,
) -> dict[str, str]:
    """Apply `extractors` to `response`.

    Keyword patterns read `parsed_fields` case-insensitively; patterns that
    look like a regular expression are searched in raw stdout and yield
    capture group 1. Missing values are logged and skipped.
    """

    extracted: dict[str, str] = {}
    for extractor in extractors:
        try:
            value = _extract_one(response, extractor)
        except ExtractionError as exc:
            LOGGER.warning(
                "extract_failed",
                extractor=extractor.name,
                variable=extractor.variable,
                error=str(exc),
                available=sorted(response.parsed_fields),
            )
            continue
        extracted[extractor.variable] = value
        if store is not None:
            store.set(extractor.variable, value)
        LOGGER.debug("extract_succeeded", extractor=extractor.name, variable=extractor.variable)
    return extracted


def _extract_one(response: Response, extractor: Extractor) -> str:
    if not extractor.is_regex:
        key = extractor.pattern.lower()
        if key not in response.parsed_fields:
            raise ExtractionError(extractor.name, f"field '{key}' not found in response")
        return response.parsed_fields[key]

    try:
        match = re.search(extractor.pattern, response.stdout)
    except re.error as exc:
        raise ExtractionError(extractor.name, f"invalid pattern: {exc}") from exc
    if not match:
        raise ExtractionError(extractor.name, "pattern did not match stdout")
    if match.re.groups < 1 or match.group(1) is None:
        raise ExtractionError(extractor.name, "pattern has no capture group 1")
    return match.group(1)
