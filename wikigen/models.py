import re
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Union

from kubernetes.utils import parse_quantity
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Kubernetes objects are immutable once the builder created them.
FROZEN = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

# RFC 1123 label and subdomain, eg namespace names and ingress hosts.
DNS_LABEL = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
DNS_HOST = r"^([a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*)?$"

# Kubernetes resource quantity, eg `5Gi`, `500m` or `1e3`.
QUANTITY = re.compile(r"[+-]?([0-9]+(\.[0-9]*)?|\.[0-9]+)([KMGTPE]i|[numkMGTPEu]|[eE][+-]?[0-9]+)?")

# Label values, eg the image tag in `app.kubernetes.io/version`.
LABEL_VALUE = re.compile(r"([A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?)?")


def quantity_value(value: str) -> Decimal:
    """Return the numeric value of the K8s quantity `value`.

    Raises `ValueError` unless `value` is a finite quantity in K8s notation.

    """
    if QUANTITY.fullmatch(value) is None:
        raise ValueError(f"invalid quantity <{value}>")

    out = parse_quantity(value)
    if not out.is_finite():
        raise ValueError(f"invalid quantity <{value}>")
    return out


# ----------------------------------------------------------------------
# Kubernetes: Generic
# ----------------------------------------------------------------------


class K8sMetadata(BaseModel):
    model_config = FROZEN

    name: str
    namespace: str | None = None
    labels: Dict[str, str] | None = None
    annotations: Dict[str, str] | None = None


class K8sLabelSelector(BaseModel):
    """Label query. An empty selector matches all pods in the namespace."""

    model_config = FROZEN

    matchLabels: Dict[str, str] | None = None


class K8sLocalRef(BaseModel):
    model_config = FROZEN

    name: str


class K8sKeySelector(BaseModel):
    model_config = FROZEN

    name: str
    key: str


class K8sObjectReference(BaseModel):
    model_config = FROZEN

    name: str
    namespace: str | None = None


# ----------------------------------------------------------------------
# Kubernetes: Namespace, ConfigMap, Secret
# ----------------------------------------------------------------------


class K8sNamespace(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["v1"] = "v1"
    kind: Literal["Namespace"] = "Namespace"
    metadata: K8sMetadata


class K8sConfigMap(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["v1"] = "v1"
    kind: Literal["ConfigMap"] = "ConfigMap"
    metadata: K8sMetadata
    data: Dict[str, str] | None = None


class K8sSecret(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["v1"] = "v1"
    kind: Literal["Secret"] = "Secret"
    metadata: K8sMetadata
    type: str = "Opaque"
    data: Dict[str, str] | None = None


# ----------------------------------------------------------------------
# Kubernetes: Storage
# ----------------------------------------------------------------------


class K8sHostPath(BaseModel):
    model_config = FROZEN

    path: str
    type: str | None = None


class K8sPersistentVolumeSpec(BaseModel):
    model_config = FROZEN

    capacity: Dict[str, str]
    accessModes: List[str]
    persistentVolumeReclaimPolicy: str | None = None
    storageClassName: str | None = None
    claimRef: K8sObjectReference | None = None
    hostPath: K8sHostPath | None = None


class K8sPersistentVolume(BaseModel):
    """Cluster scoped, ie `metadata.namespace` stays empty."""

    model_config = FROZEN

    apiVersion: Literal["v1"] = "v1"
    kind: Literal["PersistentVolume"] = "PersistentVolume"
    metadata: K8sMetadata
    spec: K8sPersistentVolumeSpec


class K8sVolumeResources(BaseModel):
    model_config = FROZEN

    requests: Dict[str, str]


class K8sPersistentVolumeClaimSpec(BaseModel):
    model_config = FROZEN

    accessModes: List[str]
    storageClassName: str | None = None
    volumeName: str | None = None
    resources: K8sVolumeResources


class K8sPersistentVolumeClaim(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["v1"] = "v1"
    kind: Literal["PersistentVolumeClaim"] = "PersistentVolumeClaim"
    metadata: K8sMetadata
    spec: K8sPersistentVolumeClaimSpec


# ----------------------------------------------------------------------
# Kubernetes: Deployment
# ----------------------------------------------------------------------


class K8sProbeHttp(BaseModel):
    model_config = FROZEN

    path: str
    port: int | str


class K8sProbe(BaseModel):
    model_config = FROZEN

    httpGet: K8sProbeHttp
    initialDelaySeconds: int | None = None
    periodSeconds: int | None = None
    timeoutSeconds: int | None = None
    failureThreshold: int | None = None


class K8sResourceCpuMem(BaseModel):
    model_config = FROZEN

    cpu: str | None = None
    memory: str | None = None


class K8sRequestLimit(BaseModel):
    model_config = FROZEN

    requests: K8sResourceCpuMem = K8sResourceCpuMem()
    limits: K8sResourceCpuMem = K8sResourceCpuMem()


class K8sEnvVarSource(BaseModel):
    model_config = FROZEN

    secretKeyRef: K8sKeySelector | None = None
    configMapKeyRef: K8sKeySelector | None = None
    fieldRef: Dict[str, str] | None = None


class K8sEnvVar(BaseModel):
    model_config = FROZEN

    name: str
    value: str | None = None
    valueFrom: K8sEnvVarSource | None = None


class K8sEnvFromSource(BaseModel):
    model_config = FROZEN

    configMapRef: K8sLocalRef | None = None
    secretRef: K8sLocalRef | None = None


class K8sContainerPort(BaseModel):
    model_config = FROZEN

    name: str | None = None
    containerPort: int
    protocol: str | None = None


class K8sVolumeMount(BaseModel):
    model_config = FROZEN

    name: str
    mountPath: str
    subPath: str | None = None


class K8sContainer(BaseModel):
    model_config = FROZEN

    name: str
    image: str
    imagePullPolicy: str | None = None
    ports: List[K8sContainerPort] | None = None
    envFrom: List[K8sEnvFromSource] | None = None
    env: List[K8sEnvVar] | None = None
    resources: K8sRequestLimit = K8sRequestLimit()
    livenessProbe: K8sProbe | None = None
    readinessProbe: K8sProbe | None = None
    volumeMounts: List[K8sVolumeMount] | None = None
    securityContext: Dict[str, Any] | None = None


class K8sPvcVolumeSource(BaseModel):
    model_config = FROZEN

    claimName: str


class K8sVolume(BaseModel):
    model_config = FROZEN

    name: str
    persistentVolumeClaim: K8sPvcVolumeSource | None = None


class K8sPodSpec(BaseModel):
    model_config = FROZEN

    serviceAccountName: str | None = None
    securityContext: Dict[str, Any] | None = None
    containers: List[K8sContainer]
    volumes: List[K8sVolume] | None = None


class K8sPodTemplate(BaseModel):
    class Metadata(BaseModel):
        model_config = FROZEN

        labels: Dict[str, str] = {}
        annotations: Dict[str, str] | None = None

    model_config = FROZEN

    metadata: Metadata
    spec: K8sPodSpec


class K8sDeploymentStrategy(BaseModel):
    model_config = FROZEN

    type: Literal["Recreate", "RollingUpdate"]


class K8sDeploymentSpec(BaseModel):
    model_config = FROZEN

    replicas: int
    selector: K8sLabelSelector
    strategy: K8sDeploymentStrategy | None = None
    template: K8sPodTemplate


class K8sDeployment(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["apps/v1"] = "apps/v1"
    kind: Literal["Deployment"] = "Deployment"
    metadata: K8sMetadata
    spec: K8sDeploymentSpec


# ----------------------------------------------------------------------
# Kubernetes: Service and Ingress
# ----------------------------------------------------------------------


class K8sServicePort(BaseModel):
    model_config = FROZEN

    name: str
    port: int
    targetPort: int | str
    protocol: str = "TCP"


class K8sServiceSpec(BaseModel):
    model_config = FROZEN

    type: str = "ClusterIP"
    ports: List[K8sServicePort]
    selector: Dict[str, str] | None = None


class K8sService(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["v1"] = "v1"
    kind: Literal["Service"] = "Service"
    metadata: K8sMetadata
    spec: K8sServiceSpec


class K8sIngress(BaseModel):
    class Spec(BaseModel):
        class TLS(BaseModel):
            model_config = FROZEN

            hosts: List[str]
            secretName: str

        class Rule(BaseModel):
            class HTTP(BaseModel):
                class Path(BaseModel):
                    class Backend(BaseModel):
                        class ServiceBackend(BaseModel):
                            class Port(BaseModel):
                                model_config = FROZEN

                                number: int | None = None
                                name: str | None = None

                            model_config = FROZEN

                            name: str
                            port: Port

                        model_config = FROZEN

                        service: ServiceBackend

                    model_config = FROZEN

                    path: str = "/"
                    pathType: str = "Prefix"
                    backend: Backend

                model_config = FROZEN

                paths: List[Path]

            model_config = FROZEN

            host: str
            http: HTTP

        model_config = FROZEN

        ingressClassName: str | None = None
        tls: List[TLS] | None = None
        rules: List[Rule]

    model_config = FROZEN

    apiVersion: Literal["networking.k8s.io/v1"] = "networking.k8s.io/v1"
    kind: Literal["Ingress"] = "Ingress"
    metadata: K8sMetadata
    spec: Spec


# ----------------------------------------------------------------------
# Kubernetes: RBAC
# ----------------------------------------------------------------------


class K8sServiceAccount(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["v1"] = "v1"
    kind: Literal["ServiceAccount"] = "ServiceAccount"
    metadata: K8sMetadata
    automountServiceAccountToken: bool | None = None


class PolicyRule(BaseModel):
    model_config = FROZEN

    apiGroups: List[str] = [""]
    resources: List[str]
    verbs: List[str]
    resourceNames: List[str] | None = None


class K8sRole(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["rbac.authorization.k8s.io/v1"] = "rbac.authorization.k8s.io/v1"
    kind: Literal["Role"] = "Role"
    metadata: K8sMetadata
    rules: List[PolicyRule]


class K8sSubject(BaseModel):
    model_config = FROZEN

    kind: str = "ServiceAccount"
    name: str
    namespace: str | None = None


class K8sRoleRef(BaseModel):
    model_config = FROZEN

    apiGroup: str = "rbac.authorization.k8s.io"
    kind: str = "Role"
    name: str


class K8sRoleBinding(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["rbac.authorization.k8s.io/v1"] = "rbac.authorization.k8s.io/v1"
    kind: Literal["RoleBinding"] = "RoleBinding"
    metadata: K8sMetadata
    subjects: List[K8sSubject]
    roleRef: K8sRoleRef


# ----------------------------------------------------------------------
# Kubernetes: NetworkPolicy
# ----------------------------------------------------------------------


class K8sNetworkPolicyPort(BaseModel):
    model_config = FROZEN

    protocol: str = "TCP"
    port: int | str


class K8sNetworkPolicyPeer(BaseModel):
    model_config = FROZEN

    podSelector: K8sLabelSelector | None = None
    namespaceSelector: K8sLabelSelector | None = None
    ipBlock: Dict[str, Any] | None = None


class K8sNetworkPolicyIngressRule(BaseModel):
    model_config = FROZEN

    from_: List[K8sNetworkPolicyPeer] | None = Field(default=None, alias="from")
    ports: List[K8sNetworkPolicyPort] | None = None


class K8sNetworkPolicyEgressRule(BaseModel):
    model_config = FROZEN

    to: List[K8sNetworkPolicyPeer] | None = None
    ports: List[K8sNetworkPolicyPort] | None = None


class K8sNetworkPolicySpec(BaseModel):
    model_config = FROZEN

    podSelector: K8sLabelSelector
    policyTypes: List[str]
    ingress: List[K8sNetworkPolicyIngressRule] | None = None
    egress: List[K8sNetworkPolicyEgressRule] | None = None


class K8sNetworkPolicy(BaseModel):
    model_config = FROZEN

    apiVersion: Literal["networking.k8s.io/v1"] = "networking.k8s.io/v1"
    kind: Literal["NetworkPolicy"] = "NetworkPolicy"
    metadata: K8sMetadata
    spec: K8sNetworkPolicySpec


# ----------------------------------------------------------------------
# ArgoCD
# ----------------------------------------------------------------------


class ArgoApplication(BaseModel):
    class Spec(BaseModel):
        class Source(BaseModel):
            model_config = FROZEN

            repoURL: str
            path: str
            targetRevision: str

        class Destination(BaseModel):
            model_config = FROZEN

            server: str
            namespace: str

        class SyncPolicy(BaseModel):
            class Automated(BaseModel):
                model_config = FROZEN

                prune: bool
                selfHeal: bool

            model_config = FROZEN

            automated: Automated | None = None
            syncOptions: List[str] | None = None

        model_config = FROZEN

        project: str
        source: Source
        destination: Destination
        syncPolicy: SyncPolicy

    model_config = FROZEN

    apiVersion: Literal["argoproj.io/v1alpha1"] = "argoproj.io/v1alpha1"
    kind: Literal["Application"] = "Application"
    metadata: K8sMetadata
    spec: Spec


# One variant per supported resource kind.
ResourceObject = Annotated[
    Union[
        K8sNamespace,
        K8sConfigMap,
        K8sSecret,
        K8sPersistentVolume,
        K8sPersistentVolumeClaim,
        K8sDeployment,
        K8sService,
        K8sIngress,
        K8sServiceAccount,
        K8sRole,
        K8sRoleBinding,
        K8sNetworkPolicy,
        ArgoApplication,
    ],
    Field(discriminator="kind"),
]


# ----------------------------------------------------------------------
# Object Graph.
# ----------------------------------------------------------------------


class ReferenceTarget(BaseModel):
    """Identify a resource by kind, name and namespace.

    Cluster scoped resources, eg StorageClasses, have no namespace.
    """

    model_config = FROZEN

    kind: str
    name: str
    namespace: str | None = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class ReferenceEdge(BaseModel):
    """Directed relationship from `source` to `target`, eg Ingress -> Service."""

    model_config = FROZEN

    source: ReferenceTarget
    field: str
    target: ReferenceTarget


class ResourceSet(BaseModel):
    """Output of the builder and input to the validator."""

    model_config = FROZEN

    objects: List[ResourceObject]

    # Resources that the bundle references but does not contain.
    external: List[ReferenceTarget] = Field(default_factory=list)


class ErrorKind(str, Enum):
    CONFIG_CONFLICT = "ConfigConflict"
    EXCESSIVE_PERMISSION = "ExcessivePermission"
    UNKNOWN_STORAGE_CLASS = "UnknownStorageClass"
    INVALID_RESOURCE_BOUNDS = "InvalidResourceBounds"
    DANGLING_REFERENCE = "DanglingReference"
    INVALID_CONFIG = "InvalidConfig"


class GenerationError(BaseModel):
    """Identify the first offending object and field."""

    model_config = FROZEN

    kind: ErrorKind
    resource: str
    field: str
    message: str


class MetaManifest(BaseModel):
    """Minimum amount of information to uniquely identify a K8s resource.

    Replicates `square.dtypes.MetaManifest` so that FastAPI can serialise it.

    """

    model_config = ConfigDict(extra="forbid")

    apiVersion: str
    kind: str
    namespace: str | None

    # Every resource must have a name except for Namespaces, which encode their
    # name in the `namespace` field.
    name: str | None


class Document(BaseModel):
    model_config = ConfigDict(extra="forbid")

    meta: MetaManifest
    manifest: Dict[str, Any]


# ----------------------------------------------------------------------
# Generator Input.
# ----------------------------------------------------------------------


class SecretKeyRefs(BaseModel):
    """Pre-existing Secret with the database credentials."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(pattern=DNS_HOST, min_length=1)
    usernameKey: str = "username"
    passwordKey: str = "password"


class ArgoCDSource(BaseModel):
    """Where ArgoCD finds the rendered bundle."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    repoURL: str = Field(min_length=1)
    path: str = "manifests"
    targetRevision: str = "HEAD"
    project: str = "default"
    namespace: str = "argocd"
    server: str = "https://kubernetes.default.svc"
    prune: bool = True
    selfHeal: bool = True


def default_role_rules() -> List[PolicyRule]:
    return [
        PolicyRule(
            apiGroups=[""],
            resources=["configmaps", "secrets"],
            verbs=["get", "list", "watch"],
        )
    ]


class DeploymentConfig(BaseModel):
    """User configurable values for a Wiki.js deployment."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    namespace: str = Field(default="wikijs", pattern=DNS_LABEL, max_length=63)
    name: str = Field(default="wikijs", pattern=DNS_LABEL, max_length=63)
    image: str = Field(default="ghcr.io/requarks/wiki:2", min_length=1)

    # `None` means the user did not ask for a specific number of replicas.
    replicas: int | None = Field(default=None, ge=1)

    storageSize: str = "5Gi"
    storageClass: str = Field(default="standard", min_length=1)
    storageClassExternal: bool = False
    createPersistentVolume: bool = True
    hostPath: str = "/mnt/data/wikijs"

    ingressHost: str = Field(default="", pattern=DNS_HOST)
    ingressClass: str = "nginx"
    ingressNamespace: str = Field(default="ingress-nginx", pattern=DNS_LABEL)
    clusterIssuer: str = ""
    tlsSecretName: str = ""

    databaseMode: Literal["sqlite", "postgres"] = "sqlite"
    dbCredentialsSecretRef: SecretKeyRefs | None = None
    dbHost: str = ""
    dbPort: int = Field(default=5432, ge=1, le=65535)
    dbName: str = "wiki"

    cpuRequest: str = "100m"
    memRequest: str = "256Mi"
    cpuLimit: str = "500m"
    memLimit: str = "512Mi"

    secretData: Dict[str, str] = {}
    roleRules: List[PolicyRule] = Field(default_factory=default_role_rules)
    argocd: ArgoCDSource | None = None

    @field_validator("storageSize", "cpuRequest", "memRequest", "cpuLimit", "memLimit")
    @classmethod
    def valid_quantity(cls, v: str) -> str:
        # Raises `ValueError` for malformed quantities like `5Xi`, `5 Gi` or `NaN`.
        quantity_value(v)
        return v


# ----------------------------------------------------------------------
# Server Internal Models.
# ----------------------------------------------------------------------


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    loglevel: str
    host: str
    port: int

    # StorageClasses the operator declared to exist in the target cluster.
    storage_classes: List[str]


# ----------------------------------------------------------------------
# API Interface Models.
# ----------------------------------------------------------------------


class BundleRequest(BaseModel):
    """POST /api/v1/bundles"""

    model_config = ConfigDict(extra="forbid")

    config: DeploymentConfig = DeploymentConfig()

    # Overrides the server wide list of known StorageClasses.
    knownStorageClasses: List[str] | None = None


class BundleResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    documents: List[Document]
    yaml: str


class BatchRequest(BaseModel):
    """POST /api/v1/bundles/batch"""

    model_config = ConfigDict(extra="forbid")

    configs: List[DeploymentConfig]
    knownStorageClasses: List[str] | None = None


class BatchResult(BaseModel):
    """One entry per config in POST /api/v1/bundles/batch"""

    model_config = ConfigDict(extra="forbid")

    documents: List[Document] = []
    error: GenerationError | None = None


class ValidationReport(BaseModel):
    """POST /api/v1/validate"""

    model_config = ConfigDict(extra="forbid")

    ok: bool
    resources: List[str] = []

    # Valid resources that lack the labels wikigen puts on its own manifests.
    foreign: List[str] = []
    error: GenerationError | None = None
