"""Names and well-known values shared by the conformance run lifecycle."""

DEFAULT_NAMESPACE = "conformance"
DEFAULT_BUSYBOX_IMAGE = "registry.k8s.io/e2e-test-images/busybox:1.36.1-1"
CONFORMANCE_IMAGE_REPOSITORY = "registry.k8s.io/conformance"
DEFAULT_CONFIG_FILE_NAME = "conformance-runner.yaml"
DEFAULT_FOCUS = "\\[Conformance\\]"

POD_NAME = "e2e-conformance-test"
CONFORMANCE_CONTAINER = "conformance-container"
OUTPUT_CONTAINER = "output-container"

SERVICE_ACCOUNT_NAME = "conformance-serviceaccount"
CLUSTER_ROLE_NAME = "conformance-serviceaccount"
CLUSTER_ROLE_BINDING_NAME = "conformance-serviceaccount-role"

REPO_LIST_CONFIG_MAP = "repo-list-config"
REPO_LIST_KEY = "repo-list.yaml"
REPO_LIST_MOUNT = "/tmp/repo-list"

RESULTS_DIR = "/tmp/results"
E2E_LOG_FILE = "e2e.log"
JUNIT_FILE = "junit_01.xml"

# Non-root uid used by both containers (nobody).
RUN_AS_USER = 65534


def namespaced_name(basename: str, namespace: str) -> str:
    """Suffix a cluster-scoped object name with the run namespace."""
    return f"{basename}:{namespace}"
