"""Cross-reference checks for a set of K8s resources.

Kubernetes itself only enforces most of these invariants at apply time, if at
all. A Service whose selector matches no pod, for instance, is perfectly valid
but useless. The checks below make those invariants explicit and reject the
bundle before it ever reaches a cluster.

Every check returns `None` or the first `GenerationError` it finds.
`validate_resources` runs them in a fixed order and stops at the first error.

"""

import logging
from decimal import Decimal
from typing import Callable, Dict, List, Sequence, Set, Tuple

import wikigen.defaults as defaults
from wikigen.models import (
    ArgoApplication,
    ErrorKind,
    GenerationError,
    K8sDeployment,
    K8sIngress,
    K8sNamespace,
    K8sNetworkPolicy,
    K8sPersistentVolume,
    K8sPersistentVolumeClaim,
    K8sRole,
    K8sRoleBinding,
    K8sService,
    ReferenceEdge,
    ReferenceTarget,
    ResourceObject,
    ResourceSet,
    quantity_value,
)

# Convenience.
logit = logging.getLogger("app")

# These kinds are not namespaced.
CLUSTER_SCOPED = ("Namespace", "PersistentVolume")


def make_error(
    kind: ErrorKind, resource: str, field: str, message: str
) -> GenerationError:
    """Log and return a `GenerationError`."""
    logit.warning(
        "generation error",
        {"kind": kind.value, "resource": resource, "field": field, "message": message},
    )
    return GenerationError(kind=kind, resource=resource, field=field, message=message)


def identity(obj: ResourceObject) -> ReferenceTarget:
    return ReferenceTarget(
        kind=obj.kind, name=obj.metadata.name, namespace=obj.metadata.namespace
    )


def is_subset(selector: Dict[str, str] | None, labels: Dict[str, str]) -> bool:
    """Return `True` if every key/value pair of `selector` is in `labels`."""
    return (selector or {}).items() <= labels.items()


def pod_labels(objects: Sequence[ResourceObject]) -> Dict[str, List[Dict[str, str]]]:
    """Return the pod template labels of all Deployments grouped by namespace."""
    out: Dict[str, List[Dict[str, str]]] = {}
    for obj in objects:
        if isinstance(obj, K8sDeployment):
            ns = obj.metadata.namespace or ""
            out.setdefault(ns, []).append(obj.spec.template.metadata.labels)
    return out


# ----------------------------------------------------------------------
# Reference Edges.
# ----------------------------------------------------------------------


def _edge(
    src: ResourceObject, field: str, kind: str, name: str, namespace: str | None
) -> ReferenceEdge:
    target = ReferenceTarget(kind=kind, name=name, namespace=namespace)
    return ReferenceEdge(source=identity(src), field=field, target=target)


def deployment_edges(obj: K8sDeployment) -> List[ReferenceEdge]:
    ns = obj.metadata.namespace
    pod = obj.spec.template.spec
    out: List[ReferenceEdge] = []

    if pod.serviceAccountName:
        field = "spec.template.spec.serviceAccountName"
        out.append(_edge(obj, field, "ServiceAccount", pod.serviceAccountName, ns))

    for i, container in enumerate(pod.containers):
        prefix = f"spec.template.spec.containers[{i}]"
        for j, src in enumerate(container.envFrom or []):
            if src.configMapRef:
                field = f"{prefix}.envFrom[{j}].configMapRef"
                out.append(_edge(obj, field, "ConfigMap", src.configMapRef.name, ns))
            if src.secretRef:
                field = f"{prefix}.envFrom[{j}].secretRef"
                out.append(_edge(obj, field, "Secret", src.secretRef.name, ns))

        for j, env in enumerate(container.env or []):
            if not env.valueFrom:
                continue
            if env.valueFrom.secretKeyRef:
                field = f"{prefix}.env[{j}].valueFrom.secretKeyRef"
                name = env.valueFrom.secretKeyRef.name
                out.append(_edge(obj, field, "Secret", name, ns))
            if env.valueFrom.configMapKeyRef:
                field = f"{prefix}.env[{j}].valueFrom.configMapKeyRef"
                name = env.valueFrom.configMapKeyRef.name
                out.append(_edge(obj, field, "ConfigMap", name, ns))

    for i, vol in enumerate(pod.volumes or []):
        if vol.persistentVolumeClaim:
            field = f"spec.template.spec.volumes[{i}].persistentVolumeClaim"
            name = vol.persistentVolumeClaim.claimName
            out.append(_edge(obj, field, "PersistentVolumeClaim", name, ns))
    return out


def ingress_edges(obj: K8sIngress) -> List[ReferenceEdge]:
    ns = obj.metadata.namespace
    out: List[ReferenceEdge] = []
    for i, rule in enumerate(obj.spec.rules):
        for j, path in enumerate(rule.http.paths):
            field = f"spec.rules[{i}].http.paths[{j}].backend.service.name"
            out.append(_edge(obj, field, "Service", path.backend.service.name, ns))
    for i, tls in enumerate(obj.spec.tls or []):
        field = f"spec.tls[{i}].secretName"
        out.append(_edge(obj, field, "Secret", tls.secretName, ns))
    return out


def role_binding_edges(obj: K8sRoleBinding) -> List[ReferenceEdge]:
    ns = obj.metadata.namespace
    out: List[ReferenceEdge] = []
    for i, subject in enumerate(obj.subjects):
        if subject.kind == "ServiceAccount":
            field = f"subjects[{i}].name"
            sa_ns = subject.namespace or ns
            out.append(_edge(obj, field, "ServiceAccount", subject.name, sa_ns))
    if obj.roleRef.kind == "Role":
        out.append(_edge(obj, "roleRef.name", "Role", obj.roleRef.name, ns))
    return out


def storage_edges(
    obj: K8sPersistentVolume | K8sPersistentVolumeClaim,
) -> List[ReferenceEdge]:
    spec = obj.spec
    out: List[ReferenceEdge] = []
    if spec.storageClassName:
        field = "spec.storageClassName"
        out.append(_edge(obj, field, "StorageClass", spec.storageClassName, None))

    if isinstance(obj, K8sPersistentVolumeClaim) and obj.spec.volumeName:
        field = "spec.volumeName"
        out.append(_edge(obj, field, "PersistentVolume", obj.spec.volumeName, None))

    if isinstance(obj, K8sPersistentVolume) and obj.spec.claimRef:
        ref = obj.spec.claimRef
        field = "spec.claimRef"
        out.append(_edge(obj, field, "PersistentVolumeClaim", ref.name, ref.namespace))
    return out


def reference_edges(objects: Sequence[ResourceObject]) -> List[ReferenceEdge]:
    """Return all references between `objects` and to external resources."""
    out: List[ReferenceEdge] = []
    for obj in objects:
        if isinstance(obj, K8sDeployment):
            out.extend(deployment_edges(obj))
        elif isinstance(obj, K8sIngress):
            out.extend(ingress_edges(obj))
        elif isinstance(obj, K8sRoleBinding):
            out.extend(role_binding_edges(obj))
        elif isinstance(obj, (K8sPersistentVolume, K8sPersistentVolumeClaim)):
            out.extend(storage_edges(obj))
        elif isinstance(obj, ArgoApplication):
            dst = obj.spec.destination.namespace
            field = "spec.destination.namespace"
            out.append(_edge(obj, field, "Namespace", dst, None))
    return out


# ----------------------------------------------------------------------
# Checks.
# ----------------------------------------------------------------------


def check_identities(objects: Sequence[ResourceObject]) -> GenerationError | None:
    """Every object must be unique and live in a Namespace of the bundle."""
    seen: Set[ReferenceTarget] = set()
    for obj in objects:
        ident = identity(obj)
        if ident in seen:
            return make_error(
                ErrorKind.CONFIG_CONFLICT, str(ident), "metadata.name", "duplicate resource"
            )
        seen.add(ident)

    namespaces = {_.metadata.name for _ in objects if isinstance(_, K8sNamespace)}
    for obj in objects:
        ns = obj.metadata.namespace
        if obj.kind in CLUSTER_SCOPED:
            if ns:
                return make_error(
                    ErrorKind.CONFIG_CONFLICT,
                    str(identity(obj)),
                    "metadata.namespace",
                    f"{obj.kind} is cluster scoped",
                )
            continue

        if not ns:
            return make_error(
                ErrorKind.DANGLING_REFERENCE,
                str(identity(obj)),
                "metadata.namespace",
                "namespaced resource without a namespace",
            )

        # ArgoCD Applications live in the ArgoCD namespace, not the bundle's.
        if isinstance(obj, ArgoApplication):
            continue

        if namespaces and ns not in namespaces:
            return make_error(
                ErrorKind.DANGLING_REFERENCE,
                str(identity(obj)),
                "metadata.namespace",
                f"namespace <{ns}> is not part of the bundle",
            )
    return None


def check_selectors(objects: Sequence[ResourceObject]) -> GenerationError | None:
    """Selectors must match the pod template labels of a Deployment.

    A selector that matches no pod is valid as far as K8s is concerned but
    renders the Service or NetworkPolicy inert.

    """
    all_labels = pod_labels(objects)

    for obj in objects:
        if isinstance(obj, K8sDeployment):
            selector = obj.spec.selector.matchLabels
            labels = obj.spec.template.metadata.labels
            if not selector or not is_subset(selector, labels):
                return make_error(
                    ErrorKind.DANGLING_REFERENCE,
                    str(identity(obj)),
                    "spec.selector.matchLabels",
                    "selector does not match the pod template labels",
                )

        elif isinstance(obj, K8sService):
            selector = obj.spec.selector
            candidates = all_labels.get(obj.metadata.namespace or "", [])
            if not selector or not any(is_subset(selector, _) for _ in candidates):
                return make_error(
                    ErrorKind.DANGLING_REFERENCE,
                    str(identity(obj)),
                    "spec.selector",
                    "selector matches no Deployment pod template",
                )

        elif isinstance(obj, K8sNetworkPolicy):
            # An empty pod selector applies to all pods in the namespace.
            selector = obj.spec.podSelector.matchLabels
            if not selector:
                continue
            candidates = all_labels.get(obj.metadata.namespace or "", [])
            if not any(is_subset(selector, _) for _ in candidates):
                return make_error(
                    ErrorKind.DANGLING_REFERENCE,
                    str(identity(obj)),
                    "spec.podSelector.matchLabels",
                    "pod selector matches no Deployment pod template",
                )
    return None


def check_references(rset: ResourceSet) -> GenerationError | None:
    """Every reference must point to a resource in the bundle or an external one.

    StorageClasses are the exception and have their own check.

    """
    available = {identity(_) for _ in rset.objects} | set(rset.external)

    for edge in reference_edges(rset.objects):
        if edge.target.kind == "StorageClass":
            continue
        if edge.target not in available:
            return make_error(
                ErrorKind.DANGLING_REFERENCE,
                str(edge.source),
                edge.field,
                f"{edge.target} does not exist",
            )

    return check_ingress_ports(rset.objects)


def check_ingress_ports(objects: Sequence[ResourceObject]) -> GenerationError | None:
    """Ingress backends must use a port the Service actually declares."""
    services = {
        (_.metadata.namespace, _.metadata.name): _
        for _ in objects
        if isinstance(_, K8sService)
    }

    for obj in objects:
        if not isinstance(obj, K8sIngress):
            continue
        for i, rule in enumerate(obj.spec.rules):
            for j, path in enumerate(rule.http.paths):
                backend = path.backend.service
                svc = services.get((obj.metadata.namespace, backend.name))
                if svc is None:
                    continue
                numbers = {_.port for _ in svc.spec.ports}
                names = {_.name for _ in svc.spec.ports}

                port = backend.port
                if port.number in numbers or (port.name and port.name in names):
                    continue
                return make_error(
                    ErrorKind.DANGLING_REFERENCE,
                    str(identity(obj)),
                    f"spec.rules[{i}].http.paths[{j}].backend.service.port",
                    f"Service <{backend.name}> has no such port",
                )
    return None


def check_rbac(objects: Sequence[ResourceObject]) -> GenerationError | None:
    """Roles must stay within the read-only allow-list."""
    allowed = (
        ("apiGroups", defaults.ALLOWED_API_GROUPS),
        ("resources", defaults.ALLOWED_ROLE_RESOURCES),
        ("verbs", defaults.ALLOWED_ROLE_VERBS),
    )

    for obj in objects:
        if isinstance(obj, K8sRoleBinding) and obj.roleRef.kind != "Role":
            return make_error(
                ErrorKind.EXCESSIVE_PERMISSION,
                str(identity(obj)),
                "roleRef.kind",
                f"cannot bind a {obj.roleRef.kind}",
            )

        if not isinstance(obj, K8sRole):
            continue

        for i, rule in enumerate(obj.rules):
            for field, allow_list in allowed:
                excess = set(getattr(rule, field)) - allow_list
                if excess:
                    return make_error(
                        ErrorKind.EXCESSIVE_PERMISSION,
                        str(identity(obj)),
                        f"rules[{i}].{field}",
                        f"not permitted: {sorted(excess)}",
                    )
    return None


def check_storage_classes(
    rset: ResourceSet, known_storage_classes: Sequence[str]
) -> GenerationError | None:
    """StorageClasses must be known or explicitly declared external."""
    known = set(known_storage_classes)
    external = set(rset.external)

    for edge in reference_edges(rset.objects):
        if edge.target.kind != "StorageClass":
            continue
        if edge.target.name in known or edge.target in external:
            continue
        return make_error(
            ErrorKind.UNKNOWN_STORAGE_CLASS,
            str(edge.source),
            edge.field,
            f"unknown StorageClass <{edge.target.name}>",
        )
    return None


def parse_bound(
    value: str, resource: str, field: str
) -> Tuple[Decimal, GenerationError | None]:
    try:
        return quantity_value(value), None
    except ValueError:
        err = make_error(
            ErrorKind.INVALID_RESOURCE_BOUNDS, resource, field, f"invalid quantity <{value}>"
        )
        return Decimal(0), err


def check_storage(objects: Sequence[ResourceObject]) -> GenerationError | None:
    """Volume sizes must be positive and PVs must be able to hold their PVC."""
    volumes = {
        _.metadata.name: _ for _ in objects if isinstance(_, K8sPersistentVolume)
    }

    for obj in objects:
        if not isinstance(obj, K8sPersistentVolumeClaim):
            continue

        ident = str(identity(obj))
        field = "spec.resources.requests.storage"
        request = obj.spec.resources.requests.get("storage", "")
        size, err = parse_bound(request, ident, field)
        if err:
            return err
        if size <= 0:
            return make_error(
                ErrorKind.INVALID_RESOURCE_BOUNDS,
                ident,
                field,
                f"storage request must be positive, not <{request}>",
            )

        pv = volumes.get(obj.spec.volumeName or "")
        if pv is None:
            continue

        if pv.spec.storageClassName != obj.spec.storageClassName:
            return make_error(
                ErrorKind.CONFIG_CONFLICT,
                ident,
                "spec.storageClassName",
                f"does not match PersistentVolume <{pv.metadata.name}>",
            )

        capacity = pv.spec.capacity.get("storage", "")
        pv_size, err = parse_bound(capacity, str(identity(pv)), "spec.capacity.storage")
        if err:
            return err
        if pv_size < size:
            return make_error(
                ErrorKind.INVALID_RESOURCE_BOUNDS,
                str(identity(pv)),
                "spec.capacity.storage",
                f"capacity <{capacity}> is smaller than the claim <{request}>",
            )
    return None


def check_resource_bounds(objects: Sequence[ResourceObject]) -> GenerationError | None:
    """Container limits must not be smaller than their requests."""
    for obj in objects:
        if not isinstance(obj, K8sDeployment):
            continue

        ident = str(identity(obj))
        for i, container in enumerate(obj.spec.template.spec.containers):
            prefix = f"spec.template.spec.containers[{i}].resources"
            res = container.resources
            for name in ("cpu", "memory"):
                request = getattr(res.requests, name)
                limit = getattr(res.limits, name)
                if not (request and limit):
                    continue

                req_val, err = parse_bound(request, ident, f"{prefix}.requests.{name}")
                if err:
                    return err
                lim_val, err = parse_bound(limit, ident, f"{prefix}.limits.{name}")
                if err:
                    return err

                if lim_val < req_val:
                    return make_error(
                        ErrorKind.INVALID_RESOURCE_BOUNDS,
                        ident,
                        f"{prefix}.limits.{name}",
                        f"limit <{limit}> is smaller than request <{request}>",
                    )
    return None


def validate_resources(
    rset: ResourceSet, known_storage_classes: Sequence[str]
) -> Tuple[ResourceSet, GenerationError | None]:
    """Return `rset` unchanged if it passes all checks.

    Otherwise, return an empty `ResourceSet` and the first error.

    """
    objs = rset.objects
    checks: List[Callable[[], GenerationError | None]] = [
        lambda: check_identities(objs),
        lambda: check_selectors(objs),
        lambda: check_references(rset),
        lambda: check_rbac(objs),
        lambda: check_storage_classes(rset, known_storage_classes),
        lambda: check_storage(objs),
        lambda: check_resource_bounds(objs),
    ]

    for check in checks:
        err = check()
        if err:
            return ResourceSet(objects=[]), err
    return rset, None
