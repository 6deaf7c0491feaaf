"""
Discovery of container images in use across Kubernetes clusters.

Every context of the local kubeconfig (or the in-cluster service account when
no kubeconfig exists) is queried for the images of Pods, Jobs and CronJobs in
all namespaces. Two listers are provided: one using the kubernetes Python
client and one shelling out to kubectl.
"""

import subprocess
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Set

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from registry_cleaner.logging_utils import get_logger

logger = get_logger(__name__)


def normalize_image_reference(image: str) -> str:
    """Normalize an image reference to the 'repo:tag' form used for matching.

    - 'repo:tag@sha256:...' -> 'repo:tag'
    - 'repo' -> 'repo:latest'
    - 'repo@sha256:...' is returned unchanged
    """
    image = image.strip()
    name, at, digest = image.partition("@")
    has_tag = name.rfind(":") > name.rfind("/")
    if has_tag:
        return name
    if at:
        return image
    return f"{name}:latest"


def _pod_spec_images(pod_spec) -> List[str]:
    if pod_spec is None:
        return []
    containers = list(pod_spec.containers or []) + list(pod_spec.init_containers or [])
    return [c.image for c in containers if c.image]


class ClusterImageLister(ABC):
    """Source of the images referenced by running workloads."""

    @abstractmethod
    def list_in_use_images(self) -> Set[str]:
        """Return the deduplicated set of image references in use."""


class KubernetesImageLister(ClusterImageLister):
    """Collects in-use images through the Kubernetes API for every configured context."""

    def __init__(self, contexts: Optional[Iterable[str]] = None):
        self.contexts = list(contexts or [])

    def _api_clients(self):
        """Yield (context name, ApiClient) pairs for each cluster to query."""
        try:
            available, _ = config.list_kube_config_contexts()
        except (ConfigException, FileNotFoundError, TypeError):
            available = None

        if not available:
            config.load_incluster_config()
            logger.info("No kubeconfig contexts found, using in-cluster config")
            yield "in-cluster", client.ApiClient()
            return

        names = self.contexts or [ctx["name"] for ctx in available]
        for name in names:
            yield name, config.new_client_from_config(context=name)

    def list_in_use_images(self) -> Set[str]:
        images: Set[str] = set()
        for context, api_client in self._api_clients():
            core_v1 = client.CoreV1Api(api_client)
            batch_v1 = client.BatchV1Api(api_client)

            found: List[str] = []
            for pod in core_v1.list_pod_for_all_namespaces().items:
                found.extend(_pod_spec_images(pod.spec))
            for job in batch_v1.list_job_for_all_namespaces().items:
                found.extend(_pod_spec_images(job.spec.template.spec))
            for cron_job in batch_v1.list_cron_job_for_all_namespaces().items:
                found.extend(_pod_spec_images(cron_job.spec.job_template.spec.template.spec))

            logger.info(f"Context {context}: {len(set(found))} distinct images in use")
            images.update(found)
        return images


class KubectlImageLister(ClusterImageLister):
    """Collects in-use images by running kubectl against every kubeconfig context."""

    RESOURCES = ("cronjobs", "jobs", "pods")

    def __init__(self, contexts: Optional[Iterable[str]] = None, timeout: int = 300):
        self.contexts = list(contexts or [])
        self.timeout = timeout

    def _kubectl(self, args: List[str]) -> str:
        result = subprocess.run(
            ["kubectl"] + args,
            capture_output=True,
            text=True,
            check=True,
            timeout=self.timeout,
        )
        return result.stdout

    def list_in_use_images(self) -> Set[str]:
        contexts = self.contexts or self._kubectl(["config", "get-contexts", "-o", "name"]).split()
        images: Set[str] = set()
        for context in contexts:
            for resource in self.RESOURCES:
                output = self._kubectl([
                    "--context", context,
                    "get", resource,
                    "--all-namespaces",
                    "-o", "jsonpath={..image}",
                ])
                images.update(output.split())
            logger.info(f"Context {context}: queried {', '.join(self.RESOURCES)}")
        return images


def create_image_lister(config_manager) -> ClusterImageLister:
    """Build the image lister selected in configuration."""
    contexts = config_manager.get_kube_contexts()
    if config_manager.get_image_lister() == "kubectl":
        return KubectlImageLister(contexts, timeout=config_manager.get_cluster_timeout())
    return KubernetesImageLister(contexts)
