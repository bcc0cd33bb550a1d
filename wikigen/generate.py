import asyncio
import base64
import hashlib
import json
import logging
from typing import Dict, List, Sequence, Tuple

import pydantic

import wikigen.defaults as defaults
import wikigen.manifests
import wikigen.validate
from wikigen.models import (
    ArgoApplication,
    DeploymentConfig,
    Document,
    ErrorKind,
    GenerationError,
    K8sConfigMap,
    K8sContainer,
    K8sContainerPort,
    K8sDeployment,
    K8sDeploymentSpec,
    K8sDeploymentStrategy,
    K8sEnvFromSource,
    K8sEnvVar,
    K8sEnvVarSource,
    K8sHostPath,
    K8sIngress,
    K8sKeySelector,
    K8sLabelSelector,
    K8sLocalRef,
    K8sMetadata,
    K8sNamespace,
    K8sNetworkPolicy,
    K8sNetworkPolicyIngressRule,
    K8sNetworkPolicyPeer,
    K8sNetworkPolicyPort,
    K8sNetworkPolicySpec,
    K8sObjectReference,
    K8sPersistentVolume,
    K8sPersistentVolumeClaim,
    K8sPersistentVolumeClaimSpec,
    K8sPersistentVolumeSpec,
    K8sPodSpec,
    K8sPodTemplate,
    K8sPvcVolumeSource,
    K8sRequestLimit,
    K8sResourceCpuMem,
    K8sRole,
    K8sRoleBinding,
    K8sRoleRef,
    K8sSecret,
    K8sService,
    K8sServiceAccount,
    K8sServicePort,
    K8sServiceSpec,
    K8sSubject,
    K8sVolume,
    K8sVolumeMount,
    K8sVolumeResources,
    LABEL_VALUE,
    ReferenceTarget,
    ResourceObject,
    ResourceSet,
)
from wikigen.validate import make_error

logit = logging.getLogger("app")


def compile_config(raw: dict) -> Tuple[DeploymentConfig, GenerationError | None]:
    """Parse the user supplied `raw` config into a `DeploymentConfig`."""
    try:
        return DeploymentConfig.model_validate(raw), None
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = str.join(".", [str(_) for _ in first["loc"]])
        err = make_error(ErrorKind.INVALID_CONFIG, "DeploymentConfig", field, first["msg"])
        return DeploymentConfig(), err


# ----------------------------------------------------------------------
# Names and Labels.
# ----------------------------------------------------------------------


def resource_name(cfg: DeploymentConfig, suffix: str = "") -> str:
    """Return the name of a K8s resource.

    All resources share the same base name and kinds with more than one
    instance, eg the Secret and ConfigMap, differ by their suffix.

    """
    return f"{cfg.name}-{suffix}" if suffix else cfg.name


def persistent_volume_name(cfg: DeploymentConfig) -> str:
    # PVs are cluster scoped and must therefore include the namespace.
    return f"{cfg.namespace}-{cfg.name}-data"


def tls_secret_name(cfg: DeploymentConfig) -> str:
    """Return the TLS Secret name, if any.

    cert-manager needs a Secret to store the certificate in, which is why we
    provide a default name whenever the user specified a cluster issuer.

    """
    if cfg.tlsSecretName:
        return cfg.tlsSecretName
    return resource_name(cfg, "tls") if cfg.clusterIssuer else ""


def image_tag(image: str) -> str:
    """Return the tag of `image` or an empty string for digest references.

    Examples: `ghcr.io/requarks/wiki:2` -> `2`, `wiki` -> `latest`.

    """
    if "@" in image:
        return ""
    repo = image.rsplit("/", 1)[-1]
    return repo.split(":", 1)[1] if ":" in repo else "latest"


def selector_labels(cfg: DeploymentConfig) -> Dict[str, str]:
    """Return the labels that Services and NetworkPolicies select pods by."""
    return {
        "app.kubernetes.io/name": cfg.name,
        "app.kubernetes.io/instance": cfg.namespace,
    }


def resource_labels(cfg: DeploymentConfig) -> Dict[str, str]:
    labels = defaults.merge_labels(
        selector_labels(cfg),
        {
            "app.kubernetes.io/component": "wiki",
            "app.kubernetes.io/part-of": "wikijs",
            "app.kubernetes.io/managed-by": defaults.MANAGED_BY,
        },
    )
    # Label values are limited to 63 characters and must end alphanumeric,
    # whereas image tags may be longer or end in `.` or `-`.
    tag = image_tag(cfg.image)
    if tag and LABEL_VALUE.fullmatch(tag):
        labels["app.kubernetes.io/version"] = tag
    return labels


def metadata(cfg: DeploymentConfig, name: str, namespaced: bool = True) -> K8sMetadata:
    return K8sMetadata(
        name=name,
        namespace=cfg.namespace if namespaced else None,
        labels=resource_labels(cfg),
    )


# ----------------------------------------------------------------------
# Resource Builders.
# ----------------------------------------------------------------------


def namespace_manifest(cfg: DeploymentConfig) -> K8sNamespace:
    return K8sNamespace(metadata=metadata(cfg, cfg.namespace, namespaced=False))


def service_account_manifest(cfg: DeploymentConfig) -> K8sServiceAccount:
    return K8sServiceAccount(metadata=metadata(cfg, resource_name(cfg)))


def role_manifest(cfg: DeploymentConfig) -> K8sRole:
    return K8sRole(metadata=metadata(cfg, resource_name(cfg)), rules=list(cfg.roleRules))


def role_binding_manifest(cfg: DeploymentConfig) -> K8sRoleBinding:
    """Bind the Role to the ServiceAccount of the Wiki.js pod."""
    return K8sRoleBinding(
        metadata=metadata(cfg, resource_name(cfg)),
        subjects=[K8sSubject(name=resource_name(cfg), namespace=cfg.namespace)],
        roleRef=K8sRoleRef(name=resource_name(cfg)),
    )


def persistent_volume_manifest(cfg: DeploymentConfig) -> K8sPersistentVolume:
    """Return a hostPath PV that is reserved for the Wiki.js PVC."""
    spec = K8sPersistentVolumeSpec(
        capacity={"storage": cfg.storageSize},
        accessModes=["ReadWriteOnce"],
        persistentVolumeReclaimPolicy="Retain",
        storageClassName=cfg.storageClass,
        claimRef=K8sObjectReference(
            name=resource_name(cfg, "data"), namespace=cfg.namespace
        ),
        hostPath=K8sHostPath(path=cfg.hostPath, type="DirectoryOrCreate"),
    )
    return K8sPersistentVolume(
        metadata=metadata(cfg, persistent_volume_name(cfg), namespaced=False),
        spec=spec,
    )


def persistent_volume_claim_manifest(cfg: DeploymentConfig) -> K8sPersistentVolumeClaim:
    spec = K8sPersistentVolumeClaimSpec(
        accessModes=["ReadWriteOnce"],
        storageClassName=cfg.storageClass,
        volumeName=persistent_volume_name(cfg) if cfg.createPersistentVolume else None,
        resources=K8sVolumeResources(requests={"storage": cfg.storageSize}),
    )
    return K8sPersistentVolumeClaim(
        metadata=metadata(cfg, resource_name(cfg, "data")), spec=spec
    )


def configmap_manifest(cfg: DeploymentConfig) -> K8sConfigMap:
    """Return the ConfigMap with the database settings for Wiki.js."""
    if cfg.databaseMode == "sqlite":
        data = {"DB_TYPE": "sqlite", "DB_FILEPATH": defaults.SQLITE_FILE}
    else:
        data = {
            "DB_TYPE": "postgres",
            "DB_HOST": cfg.dbHost,
            "DB_PORT": str(cfg.dbPort),
            "DB_NAME": cfg.dbName,
        }

        # Wiki.js must coordinate its replicas via Postgres pub/sub.
        if (cfg.replicas or 1) > 1:
            data["HA_ACTIVE"] = "true"

    return K8sConfigMap(metadata=metadata(cfg, resource_name(cfg, "config")), data=data)


def secret_manifest(cfg: DeploymentConfig) -> K8sSecret:
    data = {
        key: base64.b64encode(value.encode()).decode()
        for key, value in sorted(cfg.secretData.items())
    }
    return K8sSecret(
        metadata=metadata(cfg, resource_name(cfg, "secrets")), data=data or None
    )


def config_checksum(configmap: K8sConfigMap, secret: K8sSecret) -> str:
    """Return a stable hash of the ConfigMap and Secret content.

    The Deployment carries this value as a pod annotation to roll the pods
    whenever the configuration changes.

    """
    payload = json.dumps([configmap.data, secret.data], sort_keys=True)
    return hashlib.sha256(payload.encode()).hexdigest()


def database_env(cfg: DeploymentConfig) -> List[K8sEnvVar]:
    """Return the env vars that source the Postgres credentials."""
    ref = cfg.dbCredentialsSecretRef
    if cfg.databaseMode != "postgres" or ref is None:
        return []

    return [
        K8sEnvVar(
            name="DB_USER",
            valueFrom=K8sEnvVarSource(
                secretKeyRef=K8sKeySelector(name=ref.name, key=ref.usernameKey)
            ),
        ),
        K8sEnvVar(
            name="DB_PASS",
            valueFrom=K8sEnvVarSource(
                secretKeyRef=K8sKeySelector(name=ref.name, key=ref.passwordKey)
            ),
        ),
    ]


def deployment_manifest(
    cfg: DeploymentConfig, configmap: K8sConfigMap, secret: K8sSecret
) -> K8sDeployment:
    """Produce the Wiki.js Deployment.

    The `configmap` and `secret` are the ones the pod loads its environment
    from. Their content determines the config checksum annotation.

    """
    liveness, readiness = defaults.wikijs_probes()
    resources = K8sRequestLimit(
        requests=K8sResourceCpuMem(cpu=cfg.cpuRequest, memory=cfg.memRequest),
        limits=K8sResourceCpuMem(cpu=cfg.cpuLimit, memory=cfg.memLimit),
    )

    container = K8sContainer(
        name="wikijs",
        image=cfg.image,
        imagePullPolicy="IfNotPresent",
        ports=[
            K8sContainerPort(
                name=defaults.WIKIJS_PORT_NAME,
                containerPort=defaults.WIKIJS_PORT,
                protocol="TCP",
            )
        ],
        envFrom=[
            K8sEnvFromSource(configMapRef=K8sLocalRef(name=configmap.metadata.name)),
            K8sEnvFromSource(secretRef=K8sLocalRef(name=secret.metadata.name)),
        ],
        env=database_env(cfg) or None,
        resources=resources,
        livenessProbe=liveness,
        readinessProbe=readiness,
        volumeMounts=[K8sVolumeMount(name="data", mountPath=defaults.DATA_PATH)],
        securityContext=defaults.container_security_context(),
    )

    pod_spec = K8sPodSpec(
        serviceAccountName=resource_name(cfg),
        securityContext=defaults.pod_security_context(),
        containers=[container],
        volumes=[
            K8sVolume(
                name="data",
                persistentVolumeClaim=K8sPvcVolumeSource(
                    claimName=resource_name(cfg, "data")
                ),
            )
        ],
    )

    # SQLite lives on a ReadWriteOnce volume. The old pod must release it
    # before the new one can start.
    strategy = "Recreate" if cfg.databaseMode == "sqlite" else "RollingUpdate"

    template = K8sPodTemplate(
        metadata=K8sPodTemplate.Metadata(
            labels=resource_labels(cfg),
            annotations={"checksum/config": config_checksum(configmap, secret)},
        ),
        spec=pod_spec,
    )

    return K8sDeployment(
        metadata=metadata(cfg, resource_name(cfg)),
        spec=K8sDeploymentSpec(
            replicas=cfg.replicas or 1,
            selector=K8sLabelSelector(matchLabels=selector_labels(cfg)),
            strategy=K8sDeploymentStrategy(type=strategy),
            template=template,
        ),
    )


def service_manifest(cfg: DeploymentConfig) -> K8sService:
    port = K8sServicePort(
        name=defaults.WIKIJS_PORT_NAME,
        port=defaults.SERVICE_PORT,
        targetPort=defaults.WIKIJS_PORT_NAME,
        protocol="TCP",
    )
    return K8sService(
        metadata=metadata(cfg, resource_name(cfg)),
        spec=K8sServiceSpec(ports=[port], selector=selector_labels(cfg)),
    )


def ingress_manifest(cfg: DeploymentConfig) -> K8sIngress:
    """Route `cfg.ingressHost` to the Wiki.js Service."""
    Spec = K8sIngress.Spec
    Path = Spec.Rule.HTTP.Path

    backend = Path.Backend(
        service=Path.Backend.ServiceBackend(
            name=resource_name(cfg),
            port=Path.Backend.ServiceBackend.Port(number=defaults.SERVICE_PORT),
        )
    )
    rule = Spec.Rule(
        host=cfg.ingressHost,
        http=Spec.Rule.HTTP(paths=[Path(path="/", pathType="Prefix", backend=backend)]),
    )

    secret_name = tls_secret_name(cfg)
    tls = [Spec.TLS(hosts=[cfg.ingressHost], secretName=secret_name)]

    annotations = None
    if cfg.clusterIssuer:
        annotations = {"cert-manager.io/cluster-issuer": cfg.clusterIssuer}

    meta = metadata(cfg, resource_name(cfg))
    return K8sIngress(
        metadata=meta.model_copy(update={"annotations": annotations}),
        spec=Spec(
            ingressClassName=cfg.ingressClass or None,
            tls=tls if secret_name else None,
            rules=[rule],
        ),
    )


def network_policy_manifest(cfg: DeploymentConfig) -> K8sNetworkPolicy:
    """Admit traffic from the ingress controller only and restrict egress."""
    ingress = K8sNetworkPolicyIngressRule(
        from_=[
            K8sNetworkPolicyPeer(
                namespaceSelector=defaults.namespace_selector(cfg.ingressNamespace)
            )
        ],
        ports=[K8sNetworkPolicyPort(port=defaults.WIKIJS_PORT)],
    )

    egress = [defaults.dns_egress_rule(), defaults.https_egress_rule()]
    if cfg.databaseMode == "postgres":
        egress.append(defaults.database_egress_rule(cfg.dbPort))

    spec = K8sNetworkPolicySpec(
        podSelector=K8sLabelSelector(matchLabels=selector_labels(cfg)),
        policyTypes=["Ingress", "Egress"],
        ingress=[ingress],
        egress=egress,
    )
    return K8sNetworkPolicy(metadata=metadata(cfg, resource_name(cfg)), spec=spec)


def argocd_application(cfg: DeploymentConfig) -> ArgoApplication:
    """Return the ArgoCD Application that keeps the bundle in sync."""
    assert cfg.argocd is not None
    src = cfg.argocd
    Spec = ArgoApplication.Spec

    sync = Spec.SyncPolicy(
        automated=Spec.SyncPolicy.Automated(prune=src.prune, selfHeal=src.selfHeal),
        syncOptions=defaults.argocd_sync_options(),
    )
    spec = Spec(
        project=src.project,
        source=Spec.Source(
            repoURL=src.repoURL, path=src.path, targetRevision=src.targetRevision
        ),
        destination=Spec.Destination(server=src.server, namespace=cfg.namespace),
        syncPolicy=sync,
    )
    return ArgoApplication(
        metadata=K8sMetadata(
            name=resource_name(cfg),
            namespace=src.namespace,
            labels=resource_labels(cfg),
        ),
        spec=spec,
    )


# ----------------------------------------------------------------------
# Bundle.
# ----------------------------------------------------------------------


def check_config(cfg: DeploymentConfig) -> GenerationError | None:
    """Reject mutually exclusive or incomplete options."""
    dply = f"Deployment/{cfg.namespace}/{resource_name(cfg)}"

    # SQLite does not tolerate concurrent writers. Reject the config instead of
    # silently overriding the replica count.
    if cfg.databaseMode == "sqlite" and (cfg.replicas or 1) > 1:
        return make_error(
            ErrorKind.CONFIG_CONFLICT,
            dply,
            "replicas",
            f"sqlite supports exactly one replica, not {cfg.replicas}",
        )

    # Postgres settings in a SQLite config point to a half finished switch.
    if cfg.databaseMode == "sqlite":
        postgres_fields = (
            ("dbCredentialsSecretRef", cfg.dbCredentialsSecretRef is not None),
            ("dbHost", cfg.dbHost != ""),
            ("dbPort", cfg.dbPort != DeploymentConfig.model_fields["dbPort"].default),
        )
        for field, is_set in postgres_fields:
            if is_set:
                return make_error(
                    ErrorKind.CONFIG_CONFLICT,
                    f"ConfigMap/{cfg.namespace}/{resource_name(cfg, 'config')}",
                    field,
                    "only applies to databaseMode=postgres",
                )

    if cfg.databaseMode == "postgres":
        if cfg.dbCredentialsSecretRef is None:
            return make_error(
                ErrorKind.DANGLING_REFERENCE,
                dply,
                "dbCredentialsSecretRef",
                "postgres requires a Secret with the database credentials",
            )
        if not cfg.dbHost:
            return make_error(
                ErrorKind.CONFIG_CONFLICT,
                f"ConfigMap/{cfg.namespace}/{resource_name(cfg, 'config')}",
                "dbHost",
                "postgres requires a database host",
            )

    if not cfg.ingressHost:
        for field in ("tlsSecretName", "clusterIssuer"):
            if getattr(cfg, field):
                return make_error(
                    ErrorKind.CONFIG_CONFLICT,
                    f"Ingress/{cfg.namespace}/{resource_name(cfg)}",
                    field,
                    "TLS settings require an ingress host",
                )

    reserved = set(defaults.RESERVED_CONFIG_KEYS)
    for key in sorted(cfg.secretData):
        if key in reserved:
            return make_error(
                ErrorKind.CONFIG_CONFLICT,
                f"Secret/{cfg.namespace}/{resource_name(cfg, 'secrets')}",
                f"secretData.{key}",
                "key is reserved for the database configuration",
            )
    return None


def external_targets(cfg: DeploymentConfig) -> List[ReferenceTarget]:
    """Return the resources the bundle references but does not create."""
    out: List[ReferenceTarget] = []
    if cfg.ingressHost and tls_secret_name(cfg):
        out.append(
            ReferenceTarget(
                kind="Secret", name=tls_secret_name(cfg), namespace=cfg.namespace
            )
        )
    if cfg.databaseMode == "postgres" and cfg.dbCredentialsSecretRef:
        out.append(
            ReferenceTarget(
                kind="Secret",
                name=cfg.dbCredentialsSecretRef.name,
                namespace=cfg.namespace,
            )
        )
    if cfg.storageClassExternal:
        out.append(ReferenceTarget(kind="StorageClass", name=cfg.storageClass))
    return out


def build_resources(cfg: DeploymentConfig) -> Tuple[ResourceSet, GenerationError | None]:
    """Produce all resource models for the Wiki.js deployment `cfg`."""
    err = check_config(cfg)
    if err:
        return ResourceSet(objects=[]), err

    configmap = configmap_manifest(cfg)
    secret = secret_manifest(cfg)

    objects: List[ResourceObject] = [
        namespace_manifest(cfg),
        service_account_manifest(cfg),
        role_manifest(cfg),
        role_binding_manifest(cfg),
        persistent_volume_claim_manifest(cfg),
        configmap,
        secret,
        deployment_manifest(cfg, configmap, secret),
        service_manifest(cfg),
        network_policy_manifest(cfg),
    ]

    if cfg.createPersistentVolume:
        objects.append(persistent_volume_manifest(cfg))
    if cfg.ingressHost:
        objects.append(ingress_manifest(cfg))
    if cfg.argocd:
        objects.append(argocd_application(cfg))

    logit.debug(
        "built resources",
        {"namespace": cfg.namespace, "name": cfg.name, "count": len(objects)},
    )
    return ResourceSet(objects=objects, external=external_targets(cfg)), None


def compile_bundle(
    cfg: DeploymentConfig, known_storage_classes: Sequence[str]
) -> Tuple[List[Document], GenerationError | None]:
    """Build, validate and serialise the bundle for `cfg`.

    Returns the ordered documents, or an empty list and the first error.

    """
    rset, err = build_resources(cfg)
    if err:
        return [], err

    rset, err = wikigen.validate.validate_resources(rset, known_storage_classes)
    if err:
        return [], err

    return wikigen.manifests.make_documents(rset), None


async def compile_bundles(
    cfgs: Sequence[DeploymentConfig], known_storage_classes: Sequence[str]
) -> List[Tuple[List[Document], GenerationError | None]]:
    """Compile independent bundles concurrently.

    The output has one entry per element in `cfgs` and in the same order.

    """
    known = list(known_storage_classes)
    loop = asyncio.get_running_loop()
    tasks = [loop.run_in_executor(None, compile_bundle, cfg, known) for cfg in cfgs]
    return list(await asyncio.gather(*tasks))
