import pytest

from closurepack import ClosureSerializer, ExclusionRegistry, SourceAnalyzer, default_registry


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    # Serializers must not pick up a developer's signing key or leftover exclusions
    for var in ("CLOSUREPACK_SIGNING_KEY", "CLOSUREPACK_CAPTURE_GLOBALS", "CLOSUREPACK_ANALYZER"):
        monkeypatch.delenv(var, raising=False)
    default_registry.clear()
    yield
    default_registry.clear()


@pytest.fixture
def analyzer():
    return SourceAnalyzer()


@pytest.fixture
def registry():
    return ExclusionRegistry()


@pytest.fixture
def serializer(analyzer, registry):
    return ClosureSerializer(analyzer=analyzer, registry=registry)


@pytest.fixture
def signed_serializer(analyzer, registry):
    return ClosureSerializer(analyzer=analyzer, signing_key="top-secret", registry=registry)
