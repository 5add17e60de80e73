"""Integration test fixtures using pytest-kubernetes for cluster management."""
import os
import subprocess
import time
import pytest
from pathlib import Path
from typing import Optional
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from pytest_kubernetes.providers import AClusterManager


BACKEND_IMAGE = "backend-lifecycle:test"
NAMESPACE = "backend-lifecycle"
CONTAINER_PORT = 3000

# Warm-up used by the test Deployment; long enough to observe the not-ready window.
STARTUP_DELAY_SECONDS = 15
TERMINATION_GRACE_PERIOD_SECONDS = 60


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Expose test outcome on the test item so fixtures can react in teardown.

    Pattern:
      if request.node.rep_call.failed: ...
    """
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)


def _debug_dump_backend(k8s: AClusterManager, namespace: str = NAMESPACE) -> None:
    """Best-effort debug dump of backend state (events + pod logs). Never raises."""

    def safe_kubectl(args: list[str]) -> str:
        try:
            return k8s.kubectl(args, as_dict=False)
        except Exception as e:  # noqa: BLE001 - best-effort debug helper
            return f"[debug-dump] failed: kubectl {' '.join(args)}: {e}"

    print("\n==================== DEBUG DUMP (backend-lifecycle) ====================")
    print(safe_kubectl(["get", "deploy", "-n", namespace, "-o", "wide"]))
    print(safe_kubectl(["get", "pods", "-n", namespace, "-o", "wide"]))
    print("\n--- events (newest last) ---")
    print(safe_kubectl(["get", "events", "-n", namespace, "--sort-by=.lastTimestamp"]))

    pods = safe_kubectl(["get", "pods", "-n", namespace, "-o", "name"])
    pod_names = [line.strip() for line in pods.splitlines() if line.strip().startswith("pod/")]
    if not pod_names:
        print("[debug-dump] no backend pods found for logs")
        return

    for pod in pod_names[:2]:
        print(f"\n--- logs: {pod} (tail 200) ---")
        print(safe_kubectl(["logs", pod, "-n", namespace, "--tail=200"]))


def _build_image(image_name: str, dockerfile_path: Path, context_path: Path) -> None:
    """Build Docker image using subprocess to avoid credential store issues."""
    result = subprocess.run(
        ["docker", "images", "-q", image_name],
        capture_output=True, text=True
    )
    if result.stdout.strip():
        return  # Image already exists

    subprocess.run(
        ["docker", "build", "-t", image_name, "-f", str(dockerfile_path), str(context_path)],
        check=True
    )


def backend_deployment(name: str, app_version: str, startup_delay: int = STARTUP_DELAY_SECONDS) -> client.V1Deployment:
    """Deployment that uses /health as readiness probe and /version as liveness probe."""
    labels = {"app": name}
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=name, labels=labels),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    termination_grace_period_seconds=TERMINATION_GRACE_PERIOD_SECONDS,
                    containers=[client.V1Container(
                        name="backend",
                        image=BACKEND_IMAGE,
                        image_pull_policy="Never",
                        env=[
                            client.V1EnvVar(name="PORT", value=str(CONTAINER_PORT)),
                            client.V1EnvVar(name="APP_VERSION", value=app_version),
                            client.V1EnvVar(name="STARTUP_DELAY_SECONDS", value=str(startup_delay)),
                        ],
                        ports=[client.V1ContainerPort(name="http", container_port=CONTAINER_PORT)],
                        liveness_probe=client.V1Probe(
                            http_get=client.V1HTTPGetAction(path="/version", port="http"),
                            period_seconds=10,
                            failure_threshold=3,
                        ),
                        readiness_probe=client.V1Probe(
                            http_get=client.V1HTTPGetAction(path="/health", port="http"),
                            period_seconds=1,
                            failure_threshold=1,
                        ),
                    )],
                ),
            ),
        ),
    )


@pytest.fixture
def cluster(k8s: AClusterManager, request):
    """
    Build the backend image and prepare a namespace on a cluster managed by pytest-kubernetes.

    pytest-kubernetes uses the first available provider (k3d, kind, minikube).
    To use a specific provider: pytest -m integration --k8s-provider=kind
    """
    project_root = Path(__file__).parent.parent.parent
    always = os.environ.get("BACKEND_TEST_DEBUG") == "1"

    try:
        if not k8s.ready(timeout=5):
            print(f"[cluster] Creating cluster '{k8s.cluster_name}'...")
            k8s.create()
            print(f"[cluster] Cluster '{k8s.cluster_name}' is ready")
        else:
            print(f"[cluster] Cluster '{k8s.cluster_name}' already exists and is ready")

        _build_image(BACKEND_IMAGE, project_root / "Dockerfile", project_root)

        print(f"[cluster] Loading image into cluster...")
        k8s.load_image(BACKEND_IMAGE)

        os.environ["KUBECONFIG"] = str(k8s.kubeconfig)
        config.load_kube_config(config_file=str(k8s.kubeconfig))
        core_v1 = client.CoreV1Api()
        apps_v1 = client.AppsV1Api()

        try:
            core_v1.create_namespace(client.V1Namespace(metadata=client.V1ObjectMeta(name=NAMESPACE)))
        except ApiException as e:
            if e.status != 409:  # Already exists
                raise

        # Extend k8s object with kubernetes client APIs for convenience
        k8s.core_v1 = core_v1
        k8s.apps_v1 = apps_v1
        k8s.namespace = NAMESPACE
        k8s.container_port = CONTAINER_PORT
        k8s.termination_grace_period = TERMINATION_GRACE_PERIOD_SECONDS

        yield k8s

    except Exception:
        if always:
            _debug_dump_backend(k8s)
        raise

    finally:
        rep_call = getattr(request.node, "rep_call", None)
        failed = bool(rep_call and rep_call.failed)
        if always or failed:
            _debug_dump_backend(k8s)


@pytest.fixture
def deploy_backend(cluster: AClusterManager):
    """Create backend Deployments on demand and delete them after the test."""
    apps_v1 = cluster.apps_v1
    created: list[str] = []

    def _deploy(name: str, app_version: str = "v1", startup_delay: int = STARTUP_DELAY_SECONDS) -> str:
        try:
            apps_v1.create_namespaced_deployment(
                namespace=NAMESPACE,
                body=backend_deployment(name, app_version, startup_delay),
            )
        except ApiException as e:
            if e.status != 409:
                raise
        created.append(name)
        return name

    yield _deploy

    for name in created:
        try:
            apps_v1.delete_namespaced_deployment(name, NAMESPACE, propagation_policy="Background")
        except ApiException:
            pass


@pytest.fixture
def backend_pod(cluster: AClusterManager):
    """Helpers to look up and wait on the pod of a backend Deployment."""
    core_v1 = cluster.core_v1

    class _Pods:
        @staticmethod
        def get(name: str) -> Optional[client.V1Pod]:
            pods = core_v1.list_namespaced_pod(NAMESPACE, label_selector=f"app={name}").items
            live = [p for p in pods if not (p.metadata and p.metadata.deletion_timestamp)]
            return live[0] if live else None

        @staticmethod
        def is_ready(pod: client.V1Pod) -> bool:
            conditions = (pod.status.conditions if pod.status else None) or []
            return any(c.type == "Ready" and c.status == "True" for c in conditions)

        @staticmethod
        def container_started_at(pod: client.V1Pod):
            statuses = (pod.status.container_statuses if pod.status else None) or []
            for status in statuses:
                if status.state and status.state.running:
                    return status.state.running.started_at
            return None

        @classmethod
        def wait_running(cls, name: str, timeout: int = 120) -> client.V1Pod:
            deadline = time.time() + timeout
            while time.time() < deadline:
                pod = cls.get(name)
                if pod is not None and cls.container_started_at(pod) is not None:
                    return pod
                time.sleep(0.5)
            raise TimeoutError(f"Pod for {name} did not start within {timeout}s")

        @classmethod
        def wait_ready(cls, name: str, timeout: int = 120) -> client.V1Pod:
            deadline = time.time() + timeout
            while time.time() < deadline:
                pod = cls.get(name)
                if pod is not None and cls.is_ready(pod):
                    return pod
                time.sleep(0.5)
            raise TimeoutError(f"Pod for {name} did not become Ready within {timeout}s")

    return _Pods


@pytest.fixture
def startup_delay() -> int:
    """Warm-up configured on Deployments created by deploy_backend by default."""
    return STARTUP_DELAY_SECONDS
