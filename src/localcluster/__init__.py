"""localcluster: emulate a multi-node cluster with local member processes."""

from localcluster.cluster import (
    ClusterState,
    LocalCluster,
    MemberAdded,
    MemberCrashed,
    MemberRemoved,
)
from localcluster.config import (
    BootConfig,
    ClusterOptions,
    ControllerConfig,
    LocalClusterConfig,
    discover_config,
    load_config,
)
from localcluster.errors import (
    ClusterTerminated,
    HandshakeError,
    LaunchError,
    LinkError,
    LocalClusterError,
    MemberExited,
    ServiceError,
    SyncError,
)
from localcluster.membership import ByMember, ByNode, ByPid, Member, Selector
from localcluster.network import disable_network, ensure_network_enabled, get_cookie

__all__ = [
    "BootConfig",
    "ByMember",
    "ByNode",
    "ByPid",
    "ClusterOptions",
    "ClusterState",
    "ClusterTerminated",
    "ControllerConfig",
    "HandshakeError",
    "LaunchError",
    "LinkError",
    "LocalCluster",
    "LocalClusterConfig",
    "LocalClusterError",
    "Member",
    "MemberAdded",
    "MemberCrashed",
    "MemberExited",
    "MemberRemoved",
    "Selector",
    "ServiceError",
    "SyncError",
    "disable_network",
    "discover_config",
    "ensure_network_enabled",
    "get_cookie",
    "load_config",
]
