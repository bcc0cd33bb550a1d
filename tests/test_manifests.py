from pathlib import Path

import yaml

import wikigen.generate as gen
import wikigen.manifests as manio
from wikigen.models import ErrorKind, MetaManifest

from .conftest import KNOWN_CLASSES, bundle_manifests, find, postgres_config, sqlite_config


class TestSerialise:
    def test_kind_order(self):
        """Must emit the documents in apply order regardless of build order."""
        cfg = sqlite_config(argocd={"repoURL": "https://github.com/example/wiki"})
        rset, err = gen.build_resources(cfg)
        assert not err

        # Reverse the build order to prove the serialiser sorts.
        rset = rset.model_copy(update={"objects": rset.objects[::-1]})
        kinds = [_.manifest["kind"] for _ in manio.make_documents(rset)]
        assert kinds == [
            "Namespace",
            "ServiceAccount",
            "Role",
            "RoleBinding",
            "PersistentVolume",
            "PersistentVolumeClaim",
            "ConfigMap",
            "Secret",
            "Deployment",
            "Service",
            "Ingress",
            "NetworkPolicy",
            "Application",
        ]

    def test_meta(self):
        docs, err = gen.compile_bundle(sqlite_config(), KNOWN_CLASSES)
        assert not err

        dply = [_ for _ in docs if _.manifest["kind"] == "Deployment"][0]
        assert dply.meta == MetaManifest(
            apiVersion="apps/v1", kind="Deployment", namespace="wikijs", name="wikijs"
        )

    def test_to_manifest_aliases(self):
        """Must use the K8s field names and drop unset fields."""
        netpol = find(bundle_manifests(sqlite_config()), "NetworkPolicy")
        rule = netpol["spec"]["ingress"][0]
        assert "from" in rule
        assert "from_" not in rule

        # No unset fields anywhere.
        assert "null" not in yaml.safe_dump(netpol)

    def test_dump_yaml(self):
        docs, err = gen.compile_bundle(postgres_config(), KNOWN_CLASSES)
        assert not err

        out = manio.dump_yaml(docs)
        assert out.startswith("---")
        assert out.count("\n---") == len(docs) - 1

        # PyYAML must not emit anchors for the repeated label dicts.
        assert "&id" not in out
        assert "*id" not in out

        # Must preserve the K8s convention of `apiVersion` and `kind` first.
        first = out.splitlines()[1]
        assert first.startswith("apiVersion:")

        assert list(yaml.safe_load_all(out)) == [_.manifest for _ in docs]

    def test_bundle_files(self):
        docs, err = gen.compile_bundle(sqlite_config(), KNOWN_CLASSES)
        assert not err

        files = manio.bundle_files(docs)
        names = list(files)
        assert names[0] == "00-namespace-wikijs.yaml"
        assert names[1] == "01-serviceaccount-wikijs.yaml"
        assert "06-configmap-wikijs-config.yaml" in names
        assert names == sorted(names)
        assert len(names) == len(docs)

        assert yaml.safe_load(files[names[0]]) == docs[0].manifest

    def test_save_bundle(self, tmp_path: Path):
        docs, err = gen.compile_bundle(sqlite_config(), KNOWN_CLASSES)
        assert not err

        folder = tmp_path / "manifests"
        paths, err = manio.save_bundle(folder, docs)
        assert not err
        assert len(paths) == len(docs)
        assert sorted(folder.iterdir()) == sorted(paths)

        # Must fail gracefully if the folder is a file.
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        assert manio.save_bundle(blocker, docs) == ([], True)

    def test_is_wikigen_manifest(self):
        manifests = bundle_manifests(sqlite_config())
        assert all(manio.is_wikigen_manifest(_) for _ in manifests)

        dply = find(manifests, "Deployment")
        dply["metadata"]["labels"]["app.kubernetes.io/managed-by"] = "helm"
        assert not manio.is_wikigen_manifest(dply)

        assert not manio.is_wikigen_manifest({})
        assert not manio.is_wikigen_manifest({"metadata": {"labels": {}}})
        assert not manio.is_wikigen_manifest({"metadata": None})


class TestParse:
    def test_parse_resource(self):
        manifests = bundle_manifests(sqlite_config())
        for manifest in manifests:
            obj, err = manio.parse_resource(manifest)
            assert not err
            assert manio.to_manifest(obj) == manifest

    def test_parse_resource_err(self):
        manifest = find(bundle_manifests(sqlite_config()), "Service")
        manifest["spec"]["foo"] = "bar"

        obj, err = manio.parse_resource(manifest)
        assert obj is None
        assert err and err.kind == ErrorKind.INVALID_CONFIG
        assert err.resource == "Service/wikijs"
        assert err.field.endswith("spec.foo")

        # Unsupported kind.
        obj, err = manio.parse_resource({"apiVersion": "v1", "kind": "Pod"})
        assert obj is None
        assert err and err.resource == "<unknown>"

    def test_parse_resources(self):
        manifests = bundle_manifests(sqlite_config())
        rset, err = manio.parse_resources(manifests)
        assert not err
        assert len(rset.objects) == len(manifests)
        assert rset.external == []

        manifests.append({"apiVersion": "v1", "kind": "Pod", "metadata": {"name": "x"}})
        rset, err = manio.parse_resources(manifests)
        assert err and err.kind == ErrorKind.INVALID_CONFIG
        assert err.resource == "Pod/x"
        assert rset.objects == []

    def test_load_yaml(self):
        docs, err = manio.load_yaml("---\nfoo: 1\n---\n---\nbar: 2\n")
        assert not err
        assert docs == [{"foo": 1}, {"bar": 2}]

        assert manio.load_yaml("foo: [") == ([], True)
        assert manio.load_yaml("- 1\n- 2\n") == ([], True)
