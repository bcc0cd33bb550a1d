from typing import Dict, List, Tuple

from wikigen.models import (
    K8sLabelSelector,
    K8sNetworkPolicyEgressRule,
    K8sNetworkPolicyPeer,
    K8sNetworkPolicyPort,
    K8sProbe,
    K8sProbeHttp,
)

# Value of the `app.kubernetes.io/managed-by` label on every generated resource.
MANAGED_BY = "wikigen"

# Wiki.js listens on this port inside the container.
WIKIJS_PORT = 3000
WIKIJS_PORT_NAME = "http"

# Port of the ClusterIP Service in front of Wiki.js.
SERVICE_PORT = 80

# Wiki.js keeps the SQLite database and uploads in here.
DATA_PATH = "/wiki/data"
SQLITE_FILE = f"{DATA_PATH}/database.sqlite"

# The only RBAC scope a Wiki.js pod may request.
ALLOWED_API_GROUPS = frozenset({""})
ALLOWED_ROLE_VERBS = frozenset({"get", "list", "watch"})
ALLOWED_ROLE_RESOURCES = frozenset({"configmaps", "secrets"})

# Reserved keys in the generated ConfigMap. The user cannot override them via
# `secretData` because they would silently shadow the database settings.
RESERVED_CONFIG_KEYS = ("DB_TYPE", "DB_FILEPATH", "DB_HOST", "DB_PORT", "DB_NAME")


def pod_security_context() -> dict:
    """Return the pod security context for the `node` user of the Wiki.js image."""
    return dict(
        fsGroup=1000,
        runAsGroup=1000,
        runAsNonRoot=True,
        runAsUser=1000,
    )


def container_security_context() -> dict:
    """Return a generic container security context.

    Wiki.js writes to its installation folder at runtime and can therefore not
    run with a read-only root file system.

    """
    ctx = dict(
        allowPrivilegeEscalation=False,
        capabilities=dict(drop=["ALL"]),
        privileged=False,
        readOnlyRootFilesystem=False,
    )

    return ctx


def wikijs_probes() -> Tuple[K8sProbe, K8sProbe]:
    """Return the liveness and readiness probe for Wiki.js."""
    http = K8sProbeHttp(path="/healthz", port=WIKIJS_PORT_NAME)
    liveness = K8sProbe(
        httpGet=http,
        initialDelaySeconds=30,
        periodSeconds=15,
        timeoutSeconds=5,
        failureThreshold=5,
    )
    readiness = K8sProbe(
        httpGet=http,
        initialDelaySeconds=10,
        periodSeconds=10,
        timeoutSeconds=5,
        failureThreshold=3,
    )
    return liveness, readiness


def namespace_selector(namespace: str) -> K8sLabelSelector:
    """Select a namespace via the label K8s adds to every namespace."""
    return K8sLabelSelector(matchLabels={"kubernetes.io/metadata.name": namespace})


def dns_egress_rule() -> K8sNetworkPolicyEgressRule:
    """Allow DNS lookups against the cluster DNS in `kube-system`."""
    return K8sNetworkPolicyEgressRule(
        to=[K8sNetworkPolicyPeer(namespaceSelector=namespace_selector("kube-system"))],
        ports=[
            K8sNetworkPolicyPort(protocol="UDP", port=53),
            K8sNetworkPolicyPort(protocol="TCP", port=53),
        ],
    )


def https_egress_rule() -> K8sNetworkPolicyEgressRule:
    """Allow outbound HTTPS, eg for Wiki.js updates, locales and git sync."""
    return K8sNetworkPolicyEgressRule(ports=[K8sNetworkPolicyPort(port=443)])


def database_egress_rule(port: int) -> K8sNetworkPolicyEgressRule:
    """Allow connections to an external database on `port`."""
    return K8sNetworkPolicyEgressRule(ports=[K8sNetworkPolicyPort(port=port)])


def merge_labels(*label_sets: Dict[str, str]) -> Dict[str, str]:
    """Return a new dict with all labels.

    The output must never share a dict with the input, or PyYAML would emit
    anchors for objects that reference the same dict.

    """
    out: Dict[str, str] = {}
    for labels in label_sets:
        out.update(labels)
    return out


def argocd_sync_options() -> List[str]:
    return ["CreateNamespace=true", "PruneLast=true"]
