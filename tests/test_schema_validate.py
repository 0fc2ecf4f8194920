from admission_gateway import schema
from admission_gateway.schema import validate_snapshot


def test_empty_snapshot_is_valid():
    ok, msgs = validate_snapshot({})
    assert ok
    assert msgs[0].code == "SCHEMA_OK"


def test_errors_carry_location():
    ok, msgs = validate_snapshot({"blacklist": ["1.1.1.1", {"reason": "x"}]})
    assert not ok
    assert all(m.code == "SCHEMA_ERROR" for m in msgs)
    assert any(m.detail.startswith("blacklist/1") for m in msgs)


def test_missing_schema_fails_closed(monkeypatch, tmp_path):
    monkeypatch.setattr(schema, "SCHEMAS_DIR", tmp_path)
    schema._get_validator.cache_clear()
    try:
        ok, msgs = validate_snapshot({})
        assert not ok
        assert msgs[0].code == "SCHEMA_MISSING"
    finally:
        schema._get_validator.cache_clear()
