"""ClusterLink registry: remote cluster clients and connection status.

Lists ClusterLink descriptors from the local cluster, decodes their
embedded kubeconfigs, builds a client per remote cluster, probes its
version, and writes the outcome back to the descriptor's status
subresource.

Clients are built fresh every cycle and never cached between cycles.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from pydantic import ValidationError

from svclink.config import (
    CLUSTERLINK_GROUP,
    CLUSTERLINK_PLURAL,
    CLUSTERLINK_VERSION,
    DEFAULT_REQUEST_TIMEOUT,
)
from svclink.errors import ClientBuildError, CredentialDecodeError, RegistryListError
from svclink.models import (
    ClusterLink,
    ClusterLinkCondition,
    ConditionStatus,
    ConditionType,
)

logger = logging.getLogger(__name__)


@dataclass
class RemoteClient:
    """API handles for one remote cluster."""

    api_client: Any
    core: Any
    discovery: Any
    version: str = ""

    def close(self) -> None:
        close = getattr(self.api_client, "close", None)
        if close is not None:
            close()


@dataclass
class ClusterInfo:
    """A connected remote cluster, valid for one cycle."""

    name: str
    link: ClusterLink
    client: RemoteClient


ClientBuilder = Callable[[dict[str, Any], float], RemoteClient]


def decode_kubeconfig(encoded: str) -> dict[str, Any]:
    """Decode a base64 kubeconfig into a dict.

    Raises:
        CredentialDecodeError: If the blob is empty, not base64, or not a
            YAML mapping.
    """
    # Wrapped output (base64 -w76, YAML block scalars) carries newlines.
    compact = "".join(encoded.split())
    if not compact:
        raise CredentialDecodeError("kubeconfig is empty")
    try:
        raw = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialDecodeError(f"invalid base64: {e}") from e
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise CredentialDecodeError(f"invalid kubeconfig YAML: {e}") from e
    if not isinstance(data, dict):
        raise CredentialDecodeError(
            f"expected a kubeconfig mapping, got {type(data).__name__}"
        )
    return data


def build_remote_client(kubeconfig: dict[str, Any], request_timeout: float) -> RemoteClient:
    """Build API handles from a kubeconfig dict and probe the server version.

    Raises:
        ClientBuildError: If the kubeconfig is unusable or the cluster
            does not answer the version probe.
    """
    try:
        api_client = config.new_client_from_config_dict(kubeconfig, persist_config=False)
    except Exception as e:
        raise ClientBuildError(f"failed to parse kubeconfig: {e}") from e

    try:
        info = client.VersionApi(api_client).get_code(_request_timeout=request_timeout)
    except Exception as e:
        api_client.close()
        raise ClientBuildError(f"failed to reach cluster: {e}") from e

    return RemoteClient(
        api_client=api_client,
        core=client.CoreV1Api(api_client),
        discovery=client.DiscoveryV1Api(api_client),
        version=getattr(info, "git_version", "") or "",
    )


def build_conditions(
    connected: bool,
    error: str,
    previous: list[ClusterLinkCondition],
    now: datetime,
) -> list[ClusterLinkCondition]:
    """Compute the condition list for a connection or sync outcome.

    A condition whose status did not change keeps its previous
    ``lastTransitionTime``.
    """
    if connected:
        desired = [
            ClusterLinkCondition(
                type=ConditionType.READY,
                status=ConditionStatus.TRUE,
                reason="Connected",
                message="Successfully connected to remote cluster",
            )
        ]
    else:
        desired = [
            ClusterLinkCondition(
                type=ConditionType.READY,
                status=ConditionStatus.FALSE,
                reason="ConnectionFailed",
                message="Failed to connect to remote cluster",
            )
        ]
    if error:
        desired.append(
            ClusterLinkCondition(
                type=ConditionType.ERROR,
                status=ConditionStatus.TRUE,
                reason="SyncError" if connected else "Error",
                message=error,
            )
        )

    prior = {cond.type: cond for cond in previous}
    for cond in desired:
        old = prior.get(cond.type)
        if old is not None and old.status == cond.status and old.last_transition_time:
            cond.last_transition_time = old.last_transition_time
        else:
            cond.last_transition_time = now
    return desired


class ClusterRegistry:
    """Builds per-cycle remote clients from ClusterLink descriptors.

    Args:
        custom_api: ``CustomObjectsApi`` for the local cluster.
        request_timeout: Timeout applied to every API call, in seconds.
        client_builder: Replaces :func:`build_remote_client` (tests).
    """

    def __init__(
        self,
        custom_api: Any,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client_builder: ClientBuilder | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._custom = custom_api
        self._request_timeout = request_timeout
        self._client_builder = client_builder or build_remote_client
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    def list_cluster_info(self) -> dict[str, ClusterInfo]:
        """Connect to every enabled ClusterLink.

        Returns only the clusters that connected. Failures are written to
        the descriptor's status and never stop the other descriptors.

        Raises:
            RegistryListError: If the descriptors cannot be listed.
        """
        try:
            resp = self._custom.list_cluster_custom_object(
                CLUSTERLINK_GROUP,
                CLUSTERLINK_VERSION,
                CLUSTERLINK_PLURAL,
                _request_timeout=self._request_timeout,
            )
        except Exception as e:
            raise RegistryListError(f"failed to list ClusterLinks: {e}") from e

        infos: dict[str, ClusterInfo] = {}
        for obj in resp.get("items") or []:
            try:
                link = ClusterLink.from_object(obj)
            except ValidationError as e:
                name = (obj.get("metadata") or {}).get("name", "<unnamed>")
                logger.error("Skipping malformed ClusterLink %s: %s", name, e)
                continue

            if not link.spec.enabled:
                logger.debug("ClusterLink %s is disabled, skipping", link.name)
                continue

            try:
                kubeconfig = decode_kubeconfig(link.spec.kubeconfig)
            except CredentialDecodeError as e:
                logger.error("Failed to decode kubeconfig for cluster %s: %s", link.name, e)
                self._write_status(link, False, "", f"Failed to decode kubeconfig: {e}")
                continue

            try:
                remote = self._client_builder(kubeconfig, self._request_timeout)
            except ClientBuildError as e:
                logger.error("Failed to build client for cluster %s: %s", link.name, e)
                self._write_status(link, False, "", f"Failed to build client: {e}")
                continue

            infos[link.name] = ClusterInfo(name=link.name, link=link, client=remote)
            self._write_status(link, True, remote.version, "")

        logger.info("Connected to %d remote clusters", len(infos))
        return infos

    def record_sync_result(self, info: ClusterInfo, error: Exception | None) -> None:
        """Write a discovery outcome to the cluster's status.

        A ``None`` error clears any previously recorded sync error.
        """
        message = f"discovery error: {error}" if error is not None else ""
        version = info.link.status.version or info.client.version
        self._write_status(info.link, True, version, message)

    def close(self, infos: dict[str, ClusterInfo]) -> None:
        """Release the connection pools of a cycle's clients."""
        for info in infos.values():
            try:
                info.client.close()
            except Exception:
                logger.debug("Failed to close client for cluster %s", info.name, exc_info=True)

    def _write_status(
        self, link: ClusterLink, connected: bool, version: str, error: str,
    ) -> None:
        now = self._clock().replace(microsecond=0)
        status = link.status
        status.connected = connected
        status.version = version
        status.error = error
        if connected:
            status.last_connected = now
        status.conditions = build_conditions(connected, error, status.conditions, now)

        try:
            self._custom.patch_cluster_custom_object_status(
                CLUSTERLINK_GROUP,
                CLUSTERLINK_VERSION,
                CLUSTERLINK_PLURAL,
                link.name,
                link.status_patch(),
                _request_timeout=self._request_timeout,
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug("ClusterLink %s disappeared before status update", link.name)
                return
            logger.error("Failed to update status for ClusterLink %s: %s", link.name, e)
            return
        except Exception as e:
            logger.error("Failed to update status for ClusterLink %s: %s", link.name, e)
            return

        logger.debug("Updated status for ClusterLink %s (connected=%s)", link.name, connected)
