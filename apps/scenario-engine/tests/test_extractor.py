from __future__ import annotations

from scenario_engine.extractor import extract
from scenario_engine.models import Extractor, Response
from scenario_engine.process_adapter import parse_response_fields
from scenario_engine.variables import VariableStore


def _response(stdout: str) -> Response:
    return Response(exit_code=0, stdout=stdout, parsed_fields=parse_response_fields(stdout))


def test_keyword_extraction_is_case_insensitive_on_the_key() -> None:
    response = _response("RESULT=0\nSESSION_ID=abc 123\n")
    store = VariableStore()

    extracted = extract(
        response,
        [
            Extractor(name="session", pattern="SESSION_ID", variable="SESSION"),
            Extractor(name="code", pattern="result", variable="RESULT_CODE"),
        ],
        store,
    )

    assert extracted == {"SESSION": "abc 123", "RESULT_CODE": "0"}
    assert store.get("SESSION") == "abc 123"


def test_regex_extraction_uses_first_group() -> None:
    response = _response("Connected to host-7 in 12ms\n")

    extracted = extract(response, [Extractor(name="latency", pattern=r"in (\d+)ms", variable="LATENCY")])

    assert extracted == {"LATENCY": "12"}


def test_missing_values_are_skipped_without_raising() -> None:
    response = _response("RESULT=0\n")
    store = VariableStore({"KEEP": "old"})

    extracted = extract(
        response,
        [
            Extractor(name="missing", pattern="ERRMSG", variable="ERROR_MESSAGE"),
            Extractor(name="nomatch", pattern=r"id=(\d+)", variable="ID"),
            Extractor(name="nogroup", pattern=r"RESULT=\d", variable="RAW"),
        ],
        store,
    )

    assert extracted == {}
    assert store.snapshot() == {"KEEP": "old"}
