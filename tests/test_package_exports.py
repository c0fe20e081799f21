import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    # Ensure top-level convenience imports are available (regression guard)
    import vote_gateway

    # Access via attribute (lazy import)
    assert hasattr(vote_gateway, "VoteEngine")
    assert hasattr(vote_gateway, "create_app")

    # Import directly
    from vote_gateway import VoteEngine, create_app  # noqa: F401

    # Domain types also exposed
    from vote_gateway import Poll, SubmitRequest, TallyResult, VoteError  # noqa: F401

    # Ensure module caching works
    importlib.reload(vote_gateway)


def test_unknown_attribute_raises():
    import pytest

    import vote_gateway

    with pytest.raises(AttributeError):
        getattr(vote_gateway, "NoSuchThing")


def test_version_export_matches_pyproject():
    import vote_gateway

    assert hasattr(vote_gateway, "__version__")
    assert vote_gateway.__version__ == _read_pyproject_version()
