import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import pydantic
import square.manio
import yaml

import wikigen.defaults as defaults
from wikigen.models import (
    Document,
    ErrorKind,
    GenerationError,
    MetaManifest,
    ResourceObject,
    ResourceSet,
)
from wikigen.validate import make_error

logit = logging.getLogger("app")

# Apply order: prerequisites first, consumers last. ArgoCD Applications are
# not part of the workload and come after everything else.
KIND_ORDER = (
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
)

# Validates raw manifests into the tagged `ResourceObject` union.
RESOURCE_ADAPTER: pydantic.TypeAdapter = pydantic.TypeAdapter(ResourceObject)


def is_wikigen_manifest(manifest: dict) -> bool:
    """Return `True` if the `manifest` was generated by us."""
    try:
        labels: Dict[str, str] = manifest["metadata"]["labels"]
    except (KeyError, TypeError):
        return False

    if labels.get("app.kubernetes.io/name", "") == "":
        return False
    return labels.get("app.kubernetes.io/managed-by", "") == defaults.MANAGED_BY


def sort_key(obj: ResourceObject) -> Tuple[int, str, str]:
    return (KIND_ORDER.index(obj.kind), obj.metadata.namespace or "", obj.metadata.name)


def to_manifest(obj: ResourceObject) -> Dict[str, Any]:
    """Return the K8s manifest for `obj` without any unset fields."""
    return obj.model_dump(mode="json", by_alias=True, exclude_none=True)


def make_documents(rset: ResourceSet) -> List[Document]:
    """Serialise all resources in apply order.

    The order is stable: kind first, then namespace and name. Identical
    input therefore always produces identical output.

    """
    out = []
    for obj in sorted(rset.objects, key=sort_key):
        manifest = to_manifest(obj)
        meta = square.manio.make_meta(manifest)
        out.append(
            Document(meta=MetaManifest.model_validate(meta._asdict()), manifest=manifest)
        )
    return out


def dump_yaml(docs: Sequence[Document]) -> str:
    """Return all `docs` as a single multi document YAML string."""
    return yaml.safe_dump_all(
        [_.manifest for _ in docs],
        explicit_start=True,
        default_flow_style=False,
        sort_keys=False,
    )


def bundle_files(docs: Sequence[Document]) -> Dict[str, str]:
    """Return `{file name: YAML}` with one numbered file per document.

    The numeric prefix preserves the apply order for `kubectl apply -f <folder>`.

    """
    out: Dict[str, str] = {}
    for idx, doc in enumerate(docs):
        kind = doc.manifest["kind"].lower()
        name = doc.manifest["metadata"]["name"]
        fname = f"{idx:02d}-{kind}-{name}.yaml"
        out[fname] = yaml.safe_dump(doc.manifest, default_flow_style=False, sort_keys=False)
    return out


def save_bundle(folder: Path, docs: Sequence[Document]) -> Tuple[List[Path], bool]:
    """Write one file per document into `folder` and return their paths."""
    out = []
    try:
        folder.mkdir(parents=True, exist_ok=True)
        for fname, content in bundle_files(docs).items():
            path = folder / fname
            path.write_text(content)
            out.append(path)
    except OSError as e:
        logit.error("cannot save bundle", {"folder": str(folder), "reason": str(e)})
        return [], True

    logit.info("saved bundle", {"folder": str(folder), "files": len(out)})
    return out, False


def parse_resource(manifest: dict) -> Tuple[ResourceObject | None, GenerationError | None]:
    """Validate a raw K8s `manifest` into its resource model."""
    try:
        return RESOURCE_ADAPTER.validate_python(manifest), None
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = str.join(".", [str(_) for _ in first["loc"]])
        try:
            resource = f"{manifest['kind']}/{manifest['metadata']['name']}"
        except (KeyError, TypeError):
            resource = "<unknown>"
        err = make_error(ErrorKind.INVALID_CONFIG, resource, field, first["msg"])
        return None, err


def parse_resources(
    manifests: Sequence[dict],
) -> Tuple[ResourceSet, GenerationError | None]:
    """Compile a `ResourceSet` from raw manifests, eg existing YAML files."""
    objects = []
    for manifest in manifests:
        obj, err = parse_resource(manifest)
        if err or obj is None:
            return ResourceSet(objects=[]), err
        objects.append(obj)
    return ResourceSet(objects=objects), None


def load_yaml(text: str) -> Tuple[List[dict], bool]:
    """Return all non-empty documents in the multi document YAML `text`."""
    try:
        docs = [_ for _ in yaml.safe_load_all(text) if _]
    except yaml.YAMLError as e:
        logit.error("cannot parse YAML", {"reason": str(e)})
        return [], True

    if not all(isinstance(_, dict) for _ in docs):
        logit.error("YAML documents must be mappings")
        return [], True
    return docs, False
