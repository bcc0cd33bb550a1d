from decimal import Decimal
from pathlib import Path

import pydantic
import pytest
import yaml

import wikigen.manifests
from wikigen.models import (
    DeploymentConfig,
    ErrorKind,
    GenerationError,
    K8sIngress,
    K8sNetworkPolicy,
    K8sService,
    ReferenceTarget,
    SecretKeyRefs,
    quantity_value,
)

from .conftest import bundle_manifests, find, sqlite_config


class TestModels:
    def test_K8sNetworkPolicy(self):
        raw = yaml.safe_load(Path("tests/support/networkpolicy_specimen.yaml").read_text())
        assert wikigen.manifests.is_wikigen_manifest(raw)
        model = K8sNetworkPolicy.model_validate(raw)

        assert model.metadata.name == "wikijs"
        assert model.spec.ingress and model.spec.ingress[0].from_
        assert model.spec.ingress[0].from_[0].namespaceSelector

        # Must produce the K8s field name `from` and not the Python one.
        out = wikigen.manifests.to_manifest(model)
        assert out == raw

        # The generated policy must match the specimen.
        generated = find(bundle_manifests(sqlite_config()), "NetworkPolicy")
        assert generated["spec"] == raw["spec"]

    def test_K8sIngress(self):
        raw = yaml.safe_load(Path("tests/support/ingress_specimen.yaml").read_text())
        model = K8sIngress.model_validate(raw)
        assert wikigen.manifests.to_manifest(model) == raw

        cfg = sqlite_config(clusterIssuer="letsencrypt")
        generated = find(bundle_manifests(cfg), "Ingress")
        assert generated["spec"] == raw["spec"]
        assert generated["metadata"]["annotations"] == raw["metadata"]["annotations"]

    def test_K8sService_invalid(self):
        manifest = find(bundle_manifests(sqlite_config()), "Service")
        K8sService.model_validate(manifest)

        # Wrong kind.
        with pytest.raises(pydantic.ValidationError):
            K8sService.model_validate(manifest | {"kind": "Deployment"})

        # Unknown fields.
        with pytest.raises(pydantic.ValidationError):
            K8sService.model_validate(manifest | {"status": {}})

        # Models are immutable.
        model = K8sService.model_validate(manifest)
        with pytest.raises(pydantic.ValidationError):
            model.metadata.name = "foo"  # type: ignore

    def test_reference_target(self):
        assert str(ReferenceTarget(kind="StorageClass", name="standard")) == "StorageClass/standard"

        target = ReferenceTarget(kind="Secret", name="db", namespace="wikijs")
        assert str(target) == "Secret/wikijs/db"

        # Targets are hashable for set lookups.
        assert target in {ReferenceTarget(kind="Secret", name="db", namespace="wikijs")}

    def test_quantity_value(self):
        assert quantity_value("5Gi") == 5 * 1024**3
        assert quantity_value("500m") == Decimal("0.5")
        assert quantity_value("1.5k") == 1500
        assert quantity_value("1e3") == 1000
        assert quantity_value("0") == 0
        assert quantity_value("-1Gi") == -(1024**3)

        # Must reject everything K8s would reject, in particular all the
        # special values `Decimal` supports.
        for value in ("", "NaN", "sNaN", "Infinity", "-inf", "5 Gi", " 5Gi", "5_000", "5gi", "Gi"):
            with pytest.raises(ValueError):
                quantity_value(value)

    def test_generation_error(self):
        err = GenerationError(
            kind=ErrorKind.CONFIG_CONFLICT, resource="Deployment/ns/name", field="x", message=""
        )
        assert err.model_dump(mode="json")["kind"] == "ConfigConflict"


class TestDeploymentConfig:
    def test_defaults(self):
        cfg = DeploymentConfig()
        assert cfg.namespace == cfg.name == "wikijs"
        assert cfg.databaseMode == "sqlite"
        assert cfg.storageSize == "5Gi"
        assert cfg.replicas is None
        assert cfg.argocd is None
        assert len(cfg.roleRules) == 1

    def test_valid(self):
        cfg = DeploymentConfig.model_validate(
            {
                "namespace": "team-wiki",
                "storageSize": "500Mi",
                "ingressHost": "docs.example.com",
                "databaseMode": "postgres",
                "dbHost": "pg",
                "dbCredentialsSecretRef": {"name": "pg-creds"},
            }
        )
        assert cfg.dbCredentialsSecretRef == SecretKeyRefs(
            name="pg-creds", usernameKey="username", passwordKey="password"
        )

    @pytest.mark.parametrize(
        "values",
        [
            {"namespace": "Wiki"},
            {"namespace": "wiki_js"},
            {"namespace": "-wiki"},
            {"namespace": "a" * 64},
            {"name": ""},
            {"ingressHost": "Wiki.Example.com"},
            {"ingressHost": "wiki..example.com"},
            {"storageSize": ""},
            {"storageSize": " 5Gi"},
            {"storageSize": "5Xi"},
            {"cpuLimit": "lots"},
            {"storageSize": "NaN"},
            {"storageSize": "Infinity"},
            {"storageSize": "-Infinity"},
            {"storageSize": "5 Gi"},
            {"storageSize": "5_000Mi"},
            {"storageSize": "5gi"},
            {"cpuLimit": "NaN"},
            {"cpuRequest": "sNaN"},
            {"memLimit": "inf"},
            {"replicas": 0},
            {"dbPort": 70000},
            {"databaseMode": "mysql"},
            {"dbCredentialsSecretRef": {"name": "Bad_Name"}},
            {"argocd": {"repoURL": ""}},
            {"foo": "bar"},
        ],
    )
    def test_invalid(self, values: dict):
        with pytest.raises(pydantic.ValidationError):
            DeploymentConfig.model_validate(values)

    def test_immutable(self):
        cfg = DeploymentConfig()
        with pytest.raises(pydantic.ValidationError):
            cfg.namespace = "foo"  # type: ignore
