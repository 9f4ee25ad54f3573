# python -m pytest bicopilot/tests/utils/test_log_sanitize.py -v

from bicopilot.utils.log_sanitize import sanitize_for_log


def test_sensitive_keys_are_redacted():
    params = {"neo4j_password": "hunter2", "question": "Top 10 depositors", "nested": {"api_key": "x"}}

    out = sanitize_for_log(params)

    assert out["neo4j_password"] == "<REDACTED>"
    assert out["nested"]["api_key"] == "<REDACTED>"
    assert out["question"] == "Top 10 depositors"


def test_secrets_inside_strings_are_masked():
    text = "dsn=postgresql://bi_reader:s3cret@db:5432/bi key=sk-abcdefghijklmnop"

    out = sanitize_for_log(text)

    assert "s3cret" not in out
    assert "postgresql://bi_reader:<REDACTED>@db:5432/bi" in out
    assert "sk-abcdefghijklmnop" not in out


def test_containers_keep_their_type():
    assert sanitize_for_log(("a", "b")) == ("a", "b")
    assert sanitize_for_log(frozenset({"a"})) == frozenset({"a"})
    assert sanitize_for_log([1, None, 2.5]) == [1, None, 2.5]
