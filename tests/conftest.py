from typing import List, Tuple
from unittest import mock

import pytest
from fastapi.testclient import TestClient

import wikigen.api
import wikigen.generate
import wikigen.logstreams
import wikigen.manifests
import wikigen.validate
from wikigen.models import (
    DeploymentConfig,
    GenerationError,
    ResourceSet,
    SecretKeyRefs,
    ServerConfig,
)

# StorageClasses that all tests assume to exist.
KNOWN_CLASSES = ("standard",)


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    wikigen.logstreams.setup("DEBUG")


def get_server_config() -> ServerConfig:
    return ServerConfig(
        loglevel="info",
        host="0.0.0.0",
        port=5001,
        storage_classes=list(KNOWN_CLASSES),
    )


def sqlite_config(**kwargs) -> DeploymentConfig:
    """Return the reference Wiki.js config with SQLite backend."""
    values = dict(
        namespace="wikijs",
        databaseMode="sqlite",
        storageSize="5Gi",
        ingressHost="wiki.example.com",
        cpuRequest="100m",
        memRequest="256Mi",
        cpuLimit="500m",
        memLimit="512Mi",
    )
    values.update(kwargs)
    return DeploymentConfig.model_validate(values)


def postgres_config(**kwargs) -> DeploymentConfig:
    values = dict(
        databaseMode="postgres",
        dbHost="postgres.db.svc",
        dbCredentialsSecretRef=SecretKeyRefs(name="wikijs-db"),
    )
    values.update(kwargs)
    return sqlite_config(**values)


def bundle_manifests(cfg: DeploymentConfig) -> List[dict]:
    """Return the raw manifests of a valid bundle."""
    docs, err = wikigen.generate.compile_bundle(cfg, KNOWN_CLASSES)
    assert not err
    return [_.manifest for _ in docs]


def find(manifests: List[dict], kind: str) -> dict:
    """Return the one manifest of `kind`."""
    matches = [_ for _ in manifests if _["kind"] == kind]
    assert len(matches) == 1
    return matches[0]


def validate_manifests(
    manifests: List[dict], known: Tuple[str, ...] = KNOWN_CLASSES
) -> Tuple[ResourceSet, GenerationError | None]:
    rset, err = wikigen.manifests.parse_resources(manifests)
    assert not err
    return wikigen.validate.validate_resources(rset, known)


@pytest.fixture
def client():
    new_env = {"WIKIGEN_STORAGE_CLASSES": str.join(",", KNOWN_CLASSES)}
    with mock.patch.dict("os.environ", values=new_env, clear=True):
        app = wikigen.api.make_app()
    with TestClient(app) as tc:
        yield tc
