"""Build the Kubernetes objects that make up a conformance run."""

from kubernetes import client

from kubeharness.conformance_runner.constants import (
    CLUSTER_ROLE_BINDING_NAME,
    CLUSTER_ROLE_NAME,
    CONFORMANCE_CONTAINER,
    OUTPUT_CONTAINER,
    POD_NAME,
    REPO_LIST_CONFIG_MAP,
    REPO_LIST_KEY,
    REPO_LIST_MOUNT,
    RESULTS_DIR,
    RUN_AS_USER,
    SERVICE_ACCOUNT_NAME,
    namespaced_name,
)
from kubeharness.conformance_runner.models.config import RunConfiguration

COMPONENT_LABELS = {"component": "conformance"}
OUTPUT_VOLUME = "output-volume"
REPO_LIST_VOLUME = "repo-list-volume"


def build_namespace(namespace: str) -> client.V1Namespace:
    return client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))


def build_service_account(namespace: str) -> client.V1ServiceAccount:
    return client.V1ServiceAccount(
        metadata=client.V1ObjectMeta(
            name=SERVICE_ACCOUNT_NAME,
            namespace=namespace,
            labels=dict(COMPONENT_LABELS),
        )
    )


def build_cluster_role(namespace: str) -> client.V1ClusterRole:
    """Grant the test suite full access; it creates and deletes anything."""
    return client.V1ClusterRole(
        metadata=client.V1ObjectMeta(
            name=namespaced_name(CLUSTER_ROLE_NAME, namespace),
            labels=dict(COMPONENT_LABELS),
        ),
        rules=[
            client.V1PolicyRule(api_groups=["*"], resources=["*"], verbs=["*"]),
            client.V1PolicyRule(
                non_resource_ur_ls=["/metrics", "/logs", "/logs/*"], verbs=["get"]
            ),
        ],
    )


def build_cluster_role_binding(namespace: str) -> client.V1ClusterRoleBinding:
    return client.V1ClusterRoleBinding(
        metadata=client.V1ObjectMeta(
            name=namespaced_name(CLUSTER_ROLE_BINDING_NAME, namespace),
            labels=dict(COMPONENT_LABELS),
        ),
        role_ref=client.V1RoleRef(
            api_group="rbac.authorization.k8s.io",
            kind="ClusterRole",
            name=namespaced_name(CLUSTER_ROLE_NAME, namespace),
        ),
        subjects=[
            client.RbacV1Subject(
                kind="ServiceAccount",
                name=SERVICE_ACCOUNT_NAME,
                namespace=namespace,
            )
        ],
    )


def build_repo_list_config_map(namespace: str, repo_list: str) -> client.V1ConfigMap:
    """Carry the test image registry overrides mounted into the test container."""
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(name=REPO_LIST_CONFIG_MAP, namespace=namespace),
        data={REPO_LIST_KEY: repo_list},
    )


def _restricted_security_context() -> client.V1SecurityContext:
    """Satisfy the restricted Pod Security Standard."""
    return client.V1SecurityContext(
        allow_privilege_escalation=False,
        capabilities=client.V1Capabilities(drop=["ALL"]),
        run_as_non_root=True,
        run_as_user=RUN_AS_USER,
        seccomp_profile=client.V1SeccompProfile(type="RuntimeDefault"),
    )


def conformance_env(
    config: RunConfiguration, with_repo_list: bool = False
) -> list[client.V1EnvVar]:
    """Environment for the test container, as read by the e2e runner."""
    ginkgo_args = list(config.extra_ginkgo_args)
    if config.parallel > 1:
        ginkgo_args.append(f"--procs={config.parallel}")
    if config.verbose_ginkgo:
        ginkgo_args.append("-v")

    env = {
        "E2E_FOCUS": config.focus or "",
        "E2E_SKIP": config.skip or "",
        "E2E_PROVIDER": "skeleton",
        "E2E_VERBOSITY": str(config.verbosity),
        "E2E_USE_GO_RUNNER": "true",
        "E2E_EXTRA_ARGS": " ".join(config.extra_args),
        "E2E_EXTRA_GINKGO_ARGS": " ".join(ginkgo_args),
    }
    if config.dry_run:
        env["E2E_DRYRUN"] = "true"
    if with_repo_list:
        env["KUBE_TEST_REPO_LIST"] = f"{REPO_LIST_MOUNT}/{REPO_LIST_KEY}"
    if config.test_repo:
        env["KUBE_TEST_REPO"] = config.test_repo

    return [client.V1EnvVar(name=k, value=v) for k, v in env.items()]


def build_conformance_pod(
    config: RunConfiguration, with_repo_list: bool = False
) -> client.V1Pod:
    """Build the Pod running the suite next to a results-holding container.

    Raises:
        ValueError: If no conformance image is configured

    """
    if not config.conformance_image:
        raise ValueError("conformance image is not set")

    results_mount = client.V1VolumeMount(name=OUTPUT_VOLUME, mount_path=RESULTS_DIR)
    test_mounts = [results_mount]
    volumes = [
        client.V1Volume(name=OUTPUT_VOLUME, empty_dir=client.V1EmptyDirVolumeSource())
    ]
    if with_repo_list:
        test_mounts.append(
            client.V1VolumeMount(
                name=REPO_LIST_VOLUME, mount_path=REPO_LIST_MOUNT, read_only=True
            )
        )
        volumes.append(
            client.V1Volume(
                name=REPO_LIST_VOLUME,
                config_map=client.V1ConfigMapVolumeSource(name=REPO_LIST_CONFIG_MAP),
            )
        )

    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=POD_NAME, namespace=config.namespace),
        spec=client.V1PodSpec(
            containers=[
                client.V1Container(
                    name=CONFORMANCE_CONTAINER,
                    image=config.conformance_image,
                    image_pull_policy="IfNotPresent",
                    env=conformance_env(config, with_repo_list),
                    volume_mounts=test_mounts,
                    security_context=_restricted_security_context(),
                ),
                client.V1Container(
                    name=OUTPUT_CONTAINER,
                    image=config.busybox_image,
                    command=["/bin/sh", "-c", "sleep infinity"],
                    volume_mounts=[results_mount],
                    security_context=_restricted_security_context(),
                ),
            ],
            volumes=volumes,
            restart_policy="Never",
            service_account_name=SERVICE_ACCOUNT_NAME,
            # An empty key with operator Exists tolerates every taint.
            tolerations=[client.V1Toleration(operator="Exists")],
        ),
    )


def build_list_images_pod(image: str, namespace: str) -> client.V1Pod:
    """Build a one-shot Pod printing the images the suite would use."""
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            generate_name="list-images-",
            namespace=namespace,
            annotations={"list-images": "true"},
        ),
        spec=client.V1PodSpec(
            restart_policy="OnFailure",
            containers=[
                client.V1Container(
                    name=CONFORMANCE_CONTAINER,
                    image=image,
                    command=["/usr/local/bin/e2e.test", "--list-images"],
                )
            ],
        ),
    )
