#!/usr/bin/env python3
"""globaldns-sync - Per-cluster Global DNS endpoint reconciler

Keeps each GlobalDNS record's endpoint list for *this* cluster in step with the
load-balancer addresses of the ingresses it is scoped to. Every cluster in a
multi-cluster deployment runs its own copy; each one only ever writes its own
entry of the record's ``clusterEndpoints`` status map.

Scope resolution (exactly one applies per record):
    - multiClusterAppName: ingresses in the app namespace of every target of
      the multi-cluster app that lives in this cluster
    - projectNames: ingresses in every namespace labelled with one of the
      listed projects of this cluster

Only ingresses annotated with ``rancher.io/globalDNS: <fqdn>`` contribute.

Environment variables:

    Identity:
        CLUSTER_NAME           Identifier of the cluster this instance runs in (required)

    Management plane (GlobalDNS records, multi-cluster apps):
        MANAGEMENT_API_URL     Base URL (default: https://rancher.cattle-system)
        MANAGEMENT_API_TOKEN   Bearer token (optional)

    Cluster plane (namespaces, ingresses):
        CLUSTER_API_URL        Base URL (default: https://kubernetes.default.svc)
        CLUSTER_API_TOKEN      Bearer token (default: service account token, if mounted)

    Connection file:
        CONNECTIONS_CONFIG_PATH  Optional YAML file overriding the connections above
                                 (default: /config/connections.yaml)
                                 Example config file:
                                   management:
                                     url: "https://rancher.example.com"
                                     token_file: "/secrets/rancher-token"
                                     verify_tls: true
                                   cluster:
                                     url: "https://kubernetes.default.svc"
                                     ca_file: "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"

        VERIFY_TLS             Verify TLS certificates for both APIs (default: true)
        INGRESS_API_PATH       Ingress API group path (default: /apis/networking.k8s.io/v1)
        GLOBAL_NAMESPACE       Namespace of global objects (default: cattle-global-data)

    Runtime:
        SYNC_MODE              "once" or "watch" (polling resync loop) (default: watch)
        POLL_INTERVAL_SECONDS  Resync interval in watch mode (default: 30)
        CONFLICT_RETRIES       Retries of a record after an update conflict (default: 3)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
import yaml

# =============================================================================
# Configuration
# =============================================================================

SERVICE_ACCOUNT_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"

CLUSTER_NAME = os.getenv("CLUSTER_NAME", "").strip()

# Management plane
MANAGEMENT_API_URL = os.getenv("MANAGEMENT_API_URL", "https://rancher.cattle-system")
MANAGEMENT_API_TOKEN = os.getenv("MANAGEMENT_API_TOKEN", "")

# Cluster plane
CLUSTER_API_URL = os.getenv("CLUSTER_API_URL", "https://kubernetes.default.svc")
CLUSTER_API_TOKEN = os.getenv("CLUSTER_API_TOKEN", "")

CONNECTIONS_CONFIG_PATH = os.getenv("CONNECTIONS_CONFIG_PATH", "/config/connections.yaml")
VERIFY_TLS = os.getenv("VERIFY_TLS", "true")
INGRESS_API_PATH = os.getenv("INGRESS_API_PATH", "/apis/networking.k8s.io/v1")
GLOBAL_NAMESPACE = os.getenv("GLOBAL_NAMESPACE", "cattle-global-data")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "30"))
CONFLICT_RETRIES = int(os.getenv("CONFLICT_RETRIES", "3"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

GLOBAL_DNS_ANNOTATION = "rancher.io/globalDNS"
PROJECT_ID_LABEL = "field.cattle.io/projectId"
MANAGEMENT_API_PATH = "/apis/management.cattle.io/v3"

# =============================================================================
# Errors
# =============================================================================


class GlobalDNSError(Exception):
    """Base class for reconciliation failures."""


class MalformedReferenceError(GlobalDNSError, ValueError):
    """A composite ``clusterID:projectID`` reference could not be parsed."""


class NotFoundError(GlobalDNSError, LookupError):
    """A referenced object does not exist."""


class ListError(GlobalDNSError):
    """Listing or reading objects from an API failed."""


class WriteError(GlobalDNSError):
    """Persisting a record failed."""


class ConflictError(WriteError):
    """The record changed since it was read; retry with a fresh copy."""


# =============================================================================
# Enums
# =============================================================================


class ResolutionMode(Enum):
    """How a GlobalDNS record selects its ingresses.

    MULTI_CLUSTER_APP: targets of the referenced multi-cluster app.
    PROJECT_LIST:      namespaces of the listed projects.
    NONE:              nothing is selected; the record is left alone.
    """

    MULTI_CLUSTER_APP = "multiClusterApp"
    PROJECT_LIST = "projects"
    NONE = "none"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ProjectRef:
    """A ``clusterID:projectID`` composite identifier."""

    cluster_id: str
    project_id: str

    @classmethod
    def parse(cls, value: str) -> "ProjectRef":
        parts = (value or "").split(":")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise MalformedReferenceError(f"Error in splitting project ID '{value}'")
        return cls(cluster_id=parts[0], project_id=parts[1])


@dataclass(frozen=True)
class MultiClusterAppTarget:
    project_name: str
    app_name: str


@dataclass(frozen=True)
class MultiClusterApp:
    name: str
    targets: List[MultiClusterAppTarget] = field(default_factory=list)

    @classmethod
    def from_manifest(cls, obj: Dict[str, Any]) -> "MultiClusterApp":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        targets = [
            MultiClusterAppTarget(
                project_name=str(t.get("projectName") or ""),
                app_name=str(t.get("appName") or ""),
            )
            for t in spec.get("targets") or []
            if isinstance(t, dict)
        ]
        return cls(name=str(metadata.get("name") or ""), targets=targets)


@dataclass(frozen=True)
class IngressResource:
    """An ingress with the parts of it that matter for Global DNS."""

    namespace: str
    name: str
    annotations: Dict[str, str] = field(default_factory=dict)
    endpoints: List[str] = field(default_factory=list)

    @classmethod
    def from_manifest(cls, obj: Dict[str, Any]) -> "IngressResource":
        metadata = obj.get("metadata") or {}
        load_balancer = ((obj.get("status") or {}).get("loadBalancer") or {}).get("ingress")
        endpoints: List[str] = []
        for entry in load_balancer or []:
            if not isinstance(entry, dict):
                continue
            # IP takes precedence over hostname when both are reported
            address = entry.get("ip") or entry.get("hostname")
            if address:
                endpoints.append(str(address))
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            annotations=dict(metadata.get("annotations") or {}),
            endpoints=endpoints,
        )


@dataclass(frozen=True)
class Namespace:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def project_id(self) -> str:
        return self.labels.get(PROJECT_ID_LABEL, "")

    @classmethod
    def from_manifest(cls, obj: Dict[str, Any]) -> "Namespace":
        metadata = obj.get("metadata") or {}
        return cls(name=str(metadata.get("name") or ""), labels=dict(metadata.get("labels") or {}))


@dataclass
class GlobalDNSRecord:
    """A GlobalDNS object.

    ``raw`` keeps the manifest as read so that an update writes back every
    field this reconciler does not own.
    """

    name: str
    target_name: str
    namespace: str = ""
    multi_cluster_app_ref: str = ""
    project_refs: List[str] = field(default_factory=list)
    cluster_endpoints: Optional[Dict[str, List[str]]] = None
    endpoints: List[str] = field(default_factory=list)
    deletion_requested: bool = False
    resource_version: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}:{self.name}" if self.namespace else self.name

    @property
    def mode(self) -> ResolutionMode:
        # multiClusterAppName wins if both are set
        if self.multi_cluster_app_ref:
            return ResolutionMode.MULTI_CLUSTER_APP
        if self.project_refs:
            return ResolutionMode.PROJECT_LIST
        return ResolutionMode.NONE

    @classmethod
    def from_manifest(cls, obj: Dict[str, Any]) -> "GlobalDNSRecord":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        cluster_endpoints = status.get("clusterEndpoints")
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            target_name=str(spec.get("fqdn") or ""),
            multi_cluster_app_ref=str(spec.get("multiClusterAppName") or ""),
            project_refs=[str(p) for p in spec.get("projectNames") or []],
            cluster_endpoints=(
                {str(k): list(v or []) for k, v in cluster_endpoints.items()}
                if isinstance(cluster_endpoints, dict)
                else None
            ),
            endpoints=list(status.get("endpoints") or []),
            deletion_requested=bool(metadata.get("deletionTimestamp")),
            resource_version=str(metadata.get("resourceVersion") or ""),
            raw=copy.deepcopy(obj),
        )

    def to_manifest(self) -> Dict[str, Any]:
        obj = copy.deepcopy(self.raw)
        metadata = obj.setdefault("metadata", {})
        metadata["name"] = self.name
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        status = obj.setdefault("status", {})
        if self.cluster_endpoints is not None:
            status["clusterEndpoints"] = copy.deepcopy(self.cluster_endpoints)
        status["endpoints"] = list(self.endpoints)
        return obj


@dataclass(frozen=True)
class APIConnection:
    """Connection settings for one API server."""

    name: str
    url: str
    token: str = ""
    verify_tls: bool = True
    ca_file: str = ""


@dataclass
class SyncSummary:
    updated: int = 0
    unchanged: int = 0
    failed: int = 0


# =============================================================================
# Collaborator Interfaces
# =============================================================================


class MultiClusterAppLister(ABC):
    @abstractmethod
    def get(self, name: str) -> MultiClusterApp:
        """Return the named multi-cluster app or raise NotFoundError."""
        pass


class IngressLister(ABC):
    @abstractmethod
    def list(self, namespace: str, selector: str = "") -> List[IngressResource]:
        """List ingresses in a namespace; an empty selector matches everything."""
        pass


class NamespaceLister(ABC):
    @abstractmethod
    def list(self, selector: str = "") -> List[Namespace]:
        """List every namespace of the cluster."""
        pass


class GlobalDNSStore(ABC):
    """Read/write access to GlobalDNS records."""

    @abstractmethod
    def get(self, key: str) -> Optional[GlobalDNSRecord]:
        """Return the record, or None if it does not exist."""
        pass

    @abstractmethod
    def list(self) -> List[GlobalDNSRecord]:
        pass

    @abstractmethod
    def update(self, record: GlobalDNSRecord) -> GlobalDNSRecord:
        """Persist a record; raises ConflictError on a stale resource version."""
        pass


# =============================================================================
# API Implementations
# =============================================================================


class KubernetesAPI:
    """Minimal JSON client for a Kubernetes-style REST API."""

    def __init__(self, connection: APIConnection, timeout_seconds: float = 10.0):
        self.connection = connection
        self._url = connection.url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        if connection.token:
            self._session.headers["Authorization"] = f"Bearer {connection.token}"
        self._session.verify = connection.ca_file or connection.verify_tls

    def get(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = self._session.get(f"{self._url}{path}", params=params, timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise ListError(f"GET {path} on {self.connection.name} failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"{path} not found on {self.connection.name}")
        try:
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise ListError(f"GET {path} on {self.connection.name} failed: {e}") from e

    def put(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._session.put(f"{self._url}{path}", json=body, timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise WriteError(f"PUT {path} on {self.connection.name} failed: {e}") from e

        if response.status_code == 409:
            raise ConflictError(f"Conflict updating {path} on {self.connection.name}")
        try:
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise WriteError(f"PUT {path} on {self.connection.name} failed: {e}") from e


def _items(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


class APIMultiClusterAppLister(MultiClusterAppLister):
    def __init__(self, api: KubernetesAPI, global_namespace: str = GLOBAL_NAMESPACE):
        self._api = api
        self._namespace = global_namespace

    def get(self, name: str) -> MultiClusterApp:
        path = f"{MANAGEMENT_API_PATH}/namespaces/{self._namespace}/multiclusterapps/{name}"
        return MultiClusterApp.from_manifest(self._api.get(path))


class APIIngressLister(IngressLister):
    def __init__(self, api: KubernetesAPI, api_path: str = INGRESS_API_PATH):
        self._api = api
        self._api_path = api_path.rstrip("/")

    def list(self, namespace: str, selector: str = "") -> List[IngressResource]:
        params = {"labelSelector": selector} if selector else None
        try:
            data = self._api.get(f"{self._api_path}/namespaces/{namespace}/ingresses", params)
        except NotFoundError as e:
            raise ListError(f"Failed to list ingresses in '{namespace}': {e}") from e
        return [IngressResource.from_manifest(item) for item in _items(data)]


class APINamespaceLister(NamespaceLister):
    def __init__(self, api: KubernetesAPI):
        self._api = api

    def list(self, selector: str = "") -> List[Namespace]:
        params = {"labelSelector": selector} if selector else None
        try:
            data = self._api.get("/api/v1/namespaces", params)
        except NotFoundError as e:
            raise ListError(f"Failed to list namespaces: {e}") from e
        return [Namespace.from_manifest(item) for item in _items(data)]


class APIGlobalDNSStore(GlobalDNSStore):
    def __init__(self, api: KubernetesAPI, global_namespace: str = GLOBAL_NAMESPACE):
        self._api = api
        self._namespace = global_namespace

    def _path(self, namespace: str, name: str = "") -> str:
        path = f"{MANAGEMENT_API_PATH}/namespaces/{namespace or self._namespace}/globaldnses"
        return f"{path}/{name}" if name else path

    def get(self, key: str) -> Optional[GlobalDNSRecord]:
        namespace, _, name = key.rpartition(":")
        try:
            return GlobalDNSRecord.from_manifest(self._api.get(self._path(namespace, name)))
        except NotFoundError:
            return None

    def list(self) -> List[GlobalDNSRecord]:
        try:
            data = self._api.get(self._path(self._namespace))
        except NotFoundError as e:
            raise ListError(f"Failed to list GlobalDNS records: {e}") from e
        return [GlobalDNSRecord.from_manifest(item) for item in _items(data)]

    def update(self, record: GlobalDNSRecord) -> GlobalDNSRecord:
        path = self._path(record.namespace, record.name)
        return GlobalDNSRecord.from_manifest(self._api.put(path, record.to_manifest()))


# =============================================================================
# Endpoint Helpers
# =============================================================================


def extract_endpoints(ingresses: Sequence[IngressResource], target_name: str) -> List[str]:
    """Collect load-balancer endpoints of ingresses annotated for ``target_name``.

    Order follows the ingresses and their load-balancer entries as received;
    duplicates are kept.
    """
    endpoints: List[str] = []
    for ingress in ingresses:
        annotated = ingress.annotations.get(GLOBAL_DNS_ANNOTATION)
        if annotated is None:
            continue
        if annotated != target_name:
            logger.debug(
                f"Ingress {ingress.namespace}/{ingress.name} is annotated for "
                f"'{annotated}', not '{target_name}'"
            )
            continue
        endpoints.extend(ingress.endpoints)
    return endpoints


def endpoints_differ(current: Optional[Sequence[str]], desired: Optional[Sequence[str]]) -> bool:
    """Return True unless both sequences hold the same values the same number of times."""
    current = current or []
    desired = desired or []
    if len(current) != len(desired):
        return True
    return Counter(current) != Counter(desired)


def merge_cluster_endpoints(record: GlobalDNSRecord) -> None:
    """Rebuild ``record.endpoints`` from every cluster's contribution.

    Clusters are walked in sorted order; the first occurrence of an endpoint
    wins and later duplicates are dropped.
    """
    merged: List[str] = []
    seen = set()
    for cluster in sorted(record.cluster_endpoints or {}):
        for endpoint in record.cluster_endpoints[cluster] or []:
            if endpoint not in seen:
                seen.add(endpoint)
                merged.append(endpoint)
    record.endpoints = merged


def _multi_cluster_app_name(reference: str) -> str:
    """Accept both ``name`` and ``namespace:name`` references."""
    if ":" not in reference:
        return reference
    _, name = reference.split(":", 1)
    if not name:
        raise MalformedReferenceError(f"Error in splitting multi-cluster app ID '{reference}'")
    return name


# =============================================================================
# Core Reconciler
# =============================================================================


class GlobalDNSReconciler:
    def __init__(
        self,
        *,
        cluster_name: str,
        store: GlobalDNSStore,
        multi_cluster_apps: MultiClusterAppLister,
        ingresses: IngressLister,
        namespaces: NamespaceLister,
        recompute_global_endpoints: Callable[[GlobalDNSRecord], None] = merge_cluster_endpoints,
        conflict_retries: int = CONFLICT_RETRIES,
    ):
        self.cluster_name = cluster_name
        self.store = store
        self.multi_cluster_apps = multi_cluster_apps
        self.ingresses = ingresses
        self.namespaces = namespaces
        self.recompute_global_endpoints = recompute_global_endpoints
        self.conflict_retries = conflict_retries

    def reconcile(self, key: str) -> Optional[GlobalDNSRecord]:
        """Reconcile the record stored under ``key``.

        Returns the updated record when this cluster's endpoints changed and
        were written, otherwise None.
        """
        record = self.store.get(key)
        if record is None:
            logger.debug(f"GlobalDNS '{key}' not found, nothing to do")
            return None
        return self.reconcile_record(record)

    def reconcile_record(self, record: GlobalDNSRecord) -> Optional[GlobalDNSRecord]:
        if record.deletion_requested:
            logger.debug(f"GlobalDNS '{record.key}' is being deleted, skipping")
            return None

        mode = record.mode
        if mode is ResolutionMode.MULTI_CLUSTER_APP:
            ingresses = self._ingresses_for_multi_cluster_app(record)
        elif mode is ResolutionMode.PROJECT_LIST:
            ingresses = self._ingresses_for_projects(record)
        else:
            logger.debug(f"GlobalDNS '{record.key}' selects no multi-cluster app or projects")
            return None

        endpoints = extract_endpoints(ingresses, record.target_name)
        return self._refresh_cluster_endpoints(record, endpoints)

    def _ingresses_for_multi_cluster_app(self, record: GlobalDNSRecord) -> List[IngressResource]:
        app_name = _multi_cluster_app_name(record.multi_cluster_app_ref)
        app = self.multi_cluster_apps.get(app_name)

        # Parse every target first so a malformed one aborts before any listing
        local_targets = []
        for target in app.targets:
            ref = ProjectRef.parse(target.project_name)
            if ref.cluster_id != self.cluster_name:
                logger.debug(f"Skipping target {target.project_name} of '{app.name}' (other cluster)")
                continue
            local_targets.append(target)

        all_ingresses: List[IngressResource] = []
        for target in local_targets:
            # The app name doubles as the namespace its workloads run in
            all_ingresses.extend(self.ingresses.list(target.app_name))
        return all_ingresses

    def _ingresses_for_projects(self, record: GlobalDNSRecord) -> List[IngressResource]:
        all_namespaces = self.namespaces.list()

        refs = [ProjectRef.parse(p) for p in record.project_refs]
        project_ids = [r.project_id for r in refs if r.cluster_id == self.cluster_name]

        all_ingresses: List[IngressResource] = []
        for project_id in project_ids:
            wanted = project_id.lower()
            for namespace in all_namespaces:
                if namespace.project_id.lower() == wanted:
                    all_ingresses.extend(self.ingresses.list(namespace.name))
        return all_ingresses

    def _refresh_cluster_endpoints(
        self, record: GlobalDNSRecord, endpoints: List[str]
    ) -> Optional[GlobalDNSRecord]:
        current = (record.cluster_endpoints or {}).get(self.cluster_name)
        if not endpoints_differ(current, endpoints):
            logger.debug(f"GlobalDNS '{record.key}': endpoints for {self.cluster_name} unchanged")
            return None

        to_update = copy.deepcopy(record)
        if to_update.cluster_endpoints is None:
            to_update.cluster_endpoints = {}
        to_update.cluster_endpoints[self.cluster_name] = list(endpoints)
        self.recompute_global_endpoints(to_update)

        try:
            updated = self.store.update(to_update)
        except WriteError as e:
            raise type(e)(f"Failed to update GlobalDNS '{record.key}' endpoints: {e}") from e

        logger.info(
            f"GlobalDNS '{record.key}' ({record.target_name}): {self.cluster_name} endpoints "
            f"{list(current or [])} -> {endpoints}"
        )
        return updated

    def sync_once(self) -> SyncSummary:
        """Reconcile every stored record once.

        A record whose update conflicts is retried from a fresh read up to
        ``conflict_retries`` times. A failing record does not stop the pass.
        """
        summary = SyncSummary()
        for record in self.store.list():
            key = record.key
            attempt = 0
            while True:
                try:
                    result = self.reconcile(key)
                except ConflictError as e:
                    if attempt < self.conflict_retries:
                        attempt += 1
                        logger.warning(
                            f"GlobalDNS '{key}': {e}; retrying ({attempt}/{self.conflict_retries})"
                        )
                        continue
                    logger.error(f"GlobalDNS '{key}': giving up after {attempt} retries: {e}")
                    summary.failed += 1
                except GlobalDNSError as e:
                    logger.error(f"GlobalDNS '{key}': {e}")
                    summary.failed += 1
                else:
                    if result is None:
                        summary.unchanged += 1
                    else:
                        summary.updated += 1
                break

        logger.info(
            f"Resync finished: {summary.updated} updated, {summary.unchanged} unchanged, "
            f"{summary.failed} failed"
        )
        return summary


# =============================================================================
# Connection Loading
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _read_token_file(path: str) -> str:
    try:
        return Path(path).read_text("utf-8").strip()
    except (OSError, IOError) as e:
        logger.warning(f"Failed to read token file {path}: {e}")
        return ""


def load_connections(
    config_path: str = CONNECTIONS_CONFIG_PATH,
    *,
    management_url: str = MANAGEMENT_API_URL,
    management_token: str = MANAGEMENT_API_TOKEN,
    cluster_url: str = CLUSTER_API_URL,
    cluster_token: str = CLUSTER_API_TOKEN,
    verify_tls: Any = VERIFY_TLS,
) -> Dict[str, APIConnection]:
    """Build the management and cluster connections.

    Values from the YAML file at ``config_path`` override the environment
    defaults section by section.

    Returns:
        Mapping with ``management`` and ``cluster`` keys
    """
    file_data: Dict[str, Any] = {}
    if config_path and os.path.isfile(config_path):
        try:
            with open(config_path, "r") as f:
                loaded = yaml.safe_load(f)
            if isinstance(loaded, dict):
                file_data = loaded
            else:
                logger.warning(f"Config file {config_path} is not a mapping, ignoring it")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config from {config_path}: {e}")

    if not cluster_token and os.path.exists(SERVICE_ACCOUNT_TOKEN_PATH):
        cluster_token = _read_token_file(SERVICE_ACCOUNT_TOKEN_PATH)

    defaults = {
        "management": (management_url, management_token),
        "cluster": (cluster_url, cluster_token),
    }
    default_verify = _parse_bool(verify_tls, default=True)

    connections: Dict[str, APIConnection] = {}
    for name, (default_url, default_token) in defaults.items():
        section = file_data.get(name)
        if not isinstance(section, dict):
            section = {}
        token = str(section.get("token") or "").strip()
        token_file = str(section.get("token_file") or "").strip()
        if not token and token_file:
            token = _read_token_file(token_file)
        connections[name] = APIConnection(
            name=name,
            url=str(section.get("url") or default_url).strip(),
            token=token or default_token,
            verify_tls=_parse_bool(section.get("verify_tls"), default=default_verify),
            ca_file=str(section.get("ca_file") or "").strip(),
        )
    return connections


def create_reconciler(cluster_name: str, connections: Dict[str, APIConnection]) -> GlobalDNSReconciler:
    """Wire the reconciler to the management and cluster APIs."""
    management = KubernetesAPI(connections["management"])
    cluster = KubernetesAPI(connections["cluster"])
    return GlobalDNSReconciler(
        cluster_name=cluster_name,
        store=APIGlobalDNSStore(management, GLOBAL_NAMESPACE),
        multi_cluster_apps=APIMultiClusterAppLister(management, GLOBAL_NAMESPACE),
        ingresses=APIIngressLister(cluster, INGRESS_API_PATH),
        namespaces=APINamespaceLister(cluster),
    )


# =============================================================================
# Main
# =============================================================================


def validate_config(cluster_name: str, connections: Dict[str, APIConnection]) -> bool:
    """Validate configuration."""
    errors = []

    if not cluster_name:
        errors.append("CLUSTER_NAME is required")
    for name, connection in connections.items():
        if not connection.url:
            errors.append(f"An API URL is required for the {name} connection")
        if not connection.token:
            logger.warning(f"No token configured for the {name} connection. Using anonymous access.")

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    connections = load_connections()
    logger.info(f"globaldns-sync for cluster '{CLUSTER_NAME}'")

    if not validate_config(CLUSTER_NAME, connections):
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"Management API: {connections['management'].url}")
    logger.info(f"Cluster API: {connections['cluster'].url}")
    logger.info(f"Sync mode: {SYNC_MODE}")
    if SYNC_MODE == "watch":
        logger.info(f"Poll interval: {POLL_INTERVAL_SECONDS}s")

    reconciler = create_reconciler(CLUSTER_NAME, connections)

    try:
        if SYNC_MODE == "once":
            summary = reconciler.sync_once()
            if summary.failed:
                sys.exit(1)
            return

        while True:
            try:
                reconciler.sync_once()
            except GlobalDNSError as e:
                # Listing the records themselves failed; try again next interval
                logger.error(f"Resync failed: {e}")
            time.sleep(max(5, POLL_INTERVAL_SECONDS))

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
