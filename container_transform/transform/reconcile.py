#!/usr/bin/env python3
"""
Reconciliation of Docker container configuration into iSulad's format.

Docker's JSON keys are projected onto iSulad's field set the way a
case-insensitive JSON decoder would do it: matching keys are copied
under iSulad's spelling, unknown keys are dropped, and fields iSulad
marks as omit-if-empty are left out when empty.
"""

import logging
import os
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from container_transform.engines.docker import CONTAINER_ID_LEN
from container_transform.engines.isulad import HOSTNAME_FILE, HOSTS_FILE, RESOLV_FILE

logger = logging.getLogger(__name__)

LOG_DRIVER_JSON_FILE = "json-file"
LOG_DRIVER_SYSLOG = "syslog"
DEFAULT_LOG_SIZE = "30KB"
DEFAULT_LOG_ROTATE = "7"
DEFAULT_LOG_DRIVER = LOG_DRIVER_JSON_FILE
DEFAULT_LOG_PATH = "none"

DEFAULT_CGROUP_DIR = "/isulad"
ROOTFS_MOUNT = "/var/lib/isulad/mnt/rootfs"

# ptmx and the pts range
MUST_DEVICES = [(5, 2), (136, -1)]

V2ConfigOpt = Callable[[Dict], None]

# (name, omitempty, default)
_RESTART_POLICY_FIELDS = [("Name", False, ""), ("MaximumRetryCount", False, 0)]
_DEVICE_FIELDS = [("CgroupPermissions", False, ""), ("PathInContainer", False, ""), ("PathOnHost", False, "")]
_ULIMIT_FIELDS = [("Name", False, ""), ("Hard", False, 0), ("Soft", False, 0)]
_WEIGHT_DEVICE_FIELDS = [("Path", False, ""), ("Weight", False, 0)]
_THROTTLE_DEVICE_FIELDS = [("Path", False, ""), ("Rate", False, 0)]
_HUGETLB_FIELDS = [("PageSize", False, ""), ("Limit", False, 0)]
_HOST_CHANNEL_FIELDS = [("PathOnHost", False, ""), ("PathInContainer", False, ""),
                        ("Permissions", False, ""), ("Size", False, 0)]

_HOST_CONFIG_FIELDS = [
    "Binds", "NetworkMode", "GroupAdd", "IpcMode", "PidMode", "Privileged",
    "SystemContainer", "NsChangeFiles", "UserRemap", "ShmSize", "AutoRemove",
    "AutoRemoveBak", "ReadonlyRootfs", "UTSMode", "UsernsMode", "Sysctls",
    "Runtime", "RestartPolicy", "CapAdd", "CapDrop", "Dns", "DnsOptions",
    "DnsSearch", "ExtraHosts", "HookSpec", "CPUShares", "Memory", "OomScoreAdj",
    "BlkioWeight", "BlkioWeightDevice", "BlkioDeviceReadBps", "BlkioDeviceWriteBps",
    "CPUPeriod", "CPUQuota", "CPURealtimePeriod", "CPURealtimeRuntime",
    "CpusetCpus", "CpusetMems", "Devices", "SecurityOpt", "StorageOpt",
    "KernelMemory", "MemoryReservation", "MemorySwap", "OomKillDisable",
    "PidsLimit", "FilesLimit", "Ulimits", "Hugetlbs", "HostChannel",
    "EnvTargetFile", "ExternalRootfs", "CgroupParent",
]

_HOST_CONFIG_STRUCTS = {
    "RestartPolicy": _RESTART_POLICY_FIELDS,
    "HostChannel": _HOST_CHANNEL_FIELDS,
}

_HOST_CONFIG_STRUCT_LISTS = {
    "Devices": _DEVICE_FIELDS,
    "Ulimits": _ULIMIT_FIELDS,
    "BlkioWeightDevice": _WEIGHT_DEVICE_FIELDS,
    "BlkioDeviceReadBps": _THROTTLE_DEVICE_FIELDS,
    "BlkioDeviceWriteBps": _THROTTLE_DEVICE_FIELDS,
    "Hugetlbs": _HUGETLB_FIELDS,
}

_HEALTH_CHECK_FIELDS = [
    ("Test", False, None), ("Interval", False, 0), ("Timeout", False, 0),
    ("StartPeriod", False, 0), ("Retries", False, 0), ("ExitOnUnhealthy", False, False),
]

_CONTAINER_CFG_FIELDS = [
    ("Hostname", False, ""), ("DomainName", True, ""), ("User", True, ""),
    ("AttachStdin", False, False), ("AttachStdout", False, False), ("AttachStderr", False, False),
    ("ExposedPorts", False, None), ("PublishService", True, ""), ("Tty", False, False),
    ("OpenStdin", False, False), ("StdinOnce", False, False), ("Env", False, None),
    ("Cmd", False, None), ("ArgsEscaped", False, False), ("NetworkDisabled", False, False),
    ("Image", False, ""), ("Volume", False, None), ("WorkingDir", True, ""),
    ("Entrypoint", False, None), ("MacAddress", True, ""), ("Onbuild", False, None),
    ("Labels", False, None), ("Annotations", False, None), ("StopSignal", True, ""),
    ("HealthCheck", False, None), ("SystemContainer", False, False), ("NsChangeOpt", False, ""),
    ("Mounts", False, None), ("LogConfig", False, None),
]

_MOUNT_FIELDS = [
    ("Destination", True, ""), ("Driver", True, ""), ("Key", True, ""), ("Name", True, ""),
    ("Named", True, ""), ("Propagation", True, ""), ("RW", True, False), ("Relabel", True, ""),
    ("Source", True, ""),
]

_HEALTH_LOG_FIELDS = [("Start", True, ""), ("End", True, ""), ("ExitCode", True, 0), ("Output", True, "")]

_STATE_FIELDS = [
    ("Dead", True, False), ("RemovalInprogress", True, False), ("Restarting", True, False),
    ("Running", True, False), ("OomKilled", True, False), ("Paused", True, False),
    ("Starting", True, False), ("Error", True, ""), ("ExitCode", True, 0),
    ("FinishedAt", False, ""), ("Pid", True, 0), ("PPid", True, 0), ("StartTime", True, 0),
    ("PStartTime", True, 0), ("StartedAt", False, ""), ("Health", True, None),
]

_COMMON_CONFIG_FIELDS = [
    ("Path", True, ""), ("Args", True, None), ("Config", True, None), ("Created", False, ""),
    ("HasBeenManuallyStopped", True, False), ("HasBeenStartedBefore", True, False),
    ("Image", True, ""), ("ImageType", True, ""), ("HostnamePath", True, ""),
    ("HostsPath", True, ""), ("ResolvConfPath", True, ""), ("ShmPath", True, ""),
    ("LogPath", True, ""), ("LogDriver", True, ""), ("BaseFs", True, ""),
    ("MountPoints", True, None), ("Name", False, ""), ("RestartCount", True, 0),
    ("id", False, ""), ("MountLabel", False, ""), ("ProcessLabel", False, ""),
    ("SeccompProfile", False, ""), ("NoNewPrivileges", False, False),
]


def _is_empty(value: Any) -> bool:
    return value is None or value is False or value == 0 or value == "" or value == [] or value == {}


def _lookup(source: Dict, name: str) -> Tuple[bool, Any]:
    """Find a key case-insensitively, preferring an exact match."""
    if name in source:
        return True, source[name]
    lowered = name.lower()
    for key, value in source.items():
        if key.lower() == lowered:
            return True, value
    return False, None


def _project(source: Optional[Dict], fields: List[Tuple[str, bool, Any]]) -> Dict:
    source = source or {}
    result = {}
    for name, omitempty, default in fields:
        found, value = _lookup(source, name)
        if not found:
            value = default
        if omitempty and _is_empty(value):
            continue
        result[name] = value
    return result


def to_local_time(value: str) -> str:
    """Convert an RFC 3339 timestamp to local time; zero or unparsable values pass through."""
    if not value:
        return value
    match = re.match(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$", value)
    if not match:
        return value
    base, fraction, zone = match.groups()
    fraction = (fraction or "")[:6].ljust(6, "0")
    zone = "+00:00" if zone == "Z" else zone
    parsed = datetime.fromisoformat(f"{base}.{fraction}{zone}")
    if parsed.year <= 1:
        return value
    return parsed.astimezone().isoformat()


def image_remove_suffix_digest(reference: str) -> str:
    """Strip a trailing @digest from an image reference."""
    match = re.match(r"([a-zA-Z0-9._\-/:]*)(?:@[0-9a-fA-F]+)?", reference or "")
    return match.group(1) if match else ""


# host config

def convert_host_config(docker_host: Dict) -> Tuple[Dict, Optional[Dict]]:
    """
    Project Docker's hostconfig.json onto iSulad's host config.

    Returns:
        Tuple of (iSulad host config, Docker LogConfig or None)
    """
    host = {}
    for name in _HOST_CONFIG_FIELDS:
        found, value = _lookup(docker_host, name)
        if not found or value is None:
            continue
        if name in _HOST_CONFIG_STRUCTS and isinstance(value, dict):
            value = _project(value, _HOST_CONFIG_STRUCTS[name])
        elif name in _HOST_CONFIG_STRUCT_LISTS and isinstance(value, list):
            value = [_project(item, _HOST_CONFIG_STRUCT_LISTS[name]) for item in value]
        if name not in _HOST_CONFIG_STRUCTS and _is_empty(value):
            continue
        host[name] = value

    _, log_config = _lookup(docker_host, "LogConfig")
    if log_config is not None:
        found_type, log_type = _lookup(log_config, "Type")
        _, log_opts = _lookup(log_config, "Config")
        log_config = {"Type": log_type if found_type else "", "Config": log_opts or {}}
    return host, log_config


def reconcile_host_config(host: Dict, runtime: str):
    host["Runtime"] = runtime
    restart_policy = host.get("RestartPolicy")
    if restart_policy and restart_policy.get("Name") == "unless-stopped":
        logger.info("isulad not support unless-stopped policy, transform to always")
        restart_policy["Name"] = "always"
    if host.get("UsernsMode"):
        logger.info(f"isulad not allowed share user namespace {host['UsernsMode']}, replace to nil")
        del host["UsernsMode"]


# config.v2

def convert_v2_config(docker_v2: Dict) -> Dict:
    """Project Docker's config.v2.json onto iSulad's {CommonConfig, Image, State}."""
    common = _project(docker_v2, _COMMON_CONFIG_FIELDS)

    _, container_cfg = _lookup(docker_v2, "Config")
    if container_cfg is not None:
        cfg = _project(container_cfg, _CONTAINER_CFG_FIELDS)
        _, volumes = _lookup(container_cfg, "Volumes")
        if cfg.get("Volume") is None and volumes:
            cfg["Volume"] = volumes
        if isinstance(cfg.get("HealthCheck"), dict):
            cfg["HealthCheck"] = _project(cfg["HealthCheck"], _HEALTH_CHECK_FIELDS)
        common["Config"] = cfg

    mount_points = common.get("MountPoints")
    if mount_points:
        common["MountPoints"] = {dest: _project(mount, _MOUNT_FIELDS) for dest, mount in mount_points.items()}

    _, docker_state = _lookup(docker_v2, "State")
    state = _project(docker_state, _STATE_FIELDS)
    health = state.get("Health")
    if isinstance(health, dict):
        health = _project(health, [("Status", True, ""), ("FailingStreak", True, 0), ("Log", True, None)])
        if health.get("Log"):
            health["Log"] = [_project(item, _HEALTH_LOG_FIELDS) for item in health["Log"]]
        state["Health"] = health

    v2 = {"CommonConfig": common, "State": state}
    _, image_id = _lookup(docker_v2, "Image")
    if image_id:
        v2["Image"] = image_id
    return v2


def _annotations(v2: Dict) -> Dict:
    config = v2["CommonConfig"].get("Config")
    if config is None:
        config = v2["CommonConfig"]["Config"] = {}
    if config.get("Annotations") is None:
        config["Annotations"] = {}
    return config["Annotations"]


def v2_config_with_image(image: str) -> V2ConfigOpt:
    def opt(v2: Dict):
        v2["CommonConfig"]["Image"] = image_remove_suffix_digest(image)
        v2["CommonConfig"]["ImageType"] = "oci"
    return opt


def v2_config_with_cgroup_parent(cgroup_parent: str) -> V2ConfigOpt:
    def opt(v2: Dict):
        suffix = "/" + v2["CommonConfig"].get("id", "")
        if cgroup_parent.startswith("/docker/") or not cgroup_parent.endswith(suffix):
            cgroup_dir = DEFAULT_CGROUP_DIR
        else:
            cgroup_dir = cgroup_parent[:-len(suffix)]
        _annotations(v2)["cgroup.dir"] = cgroup_dir
    return opt


def v2_config_with_oom_score_adj(oom_score: int) -> V2ConfigOpt:
    def opt(v2: Dict):
        _annotations(v2)["proc.oom_score_adj"] = str(oom_score)
    return opt


def v2_config_with_files_limit(files_limit: int) -> V2ConfigOpt:
    def opt(v2: Dict):
        _annotations(v2)["files.limit"] = str(files_limit)
    return opt


def v2_config_with_log_config(log_config: Optional[Dict], base_path: str) -> V2ConfigOpt:
    """
    Map Docker's log driver onto iSulad's console log annotations.

    Docker json-file options besides max-file and max-size, and syslog
    options besides tag and syslog-facility, have no iSulad equivalent.
    """
    def opt(v2: Dict):
        common = v2["CommonConfig"]
        annotations = _annotations(v2)
        log_type = (log_config or {}).get("Type", "default")
        log_opts = (log_config or {}).get("Config") or {}

        if log_type == LOG_DRIVER_JSON_FILE:
            common["LogDriver"] = LOG_DRIVER_JSON_FILE
            common["LogPath"] = os.path.join(base_path, "console.log")
            annotations["log.console.driver"] = LOG_DRIVER_JSON_FILE
            annotations["log.console.file"] = common["LogPath"]
            annotations["log.console.filerotate"] = log_opts.get("max-file", DEFAULT_LOG_ROTATE)
            annotations["log.console.filesize"] = log_opts.get("max-size", DEFAULT_LOG_SIZE)
        elif log_type == LOG_DRIVER_SYSLOG:
            common["LogDriver"] = LOG_DRIVER_SYSLOG
            annotations["log.console.driver"] = LOG_DRIVER_SYSLOG
            if "tag" in log_opts:
                annotations["log.console.tag"] = log_opts["tag"]
            if "syslog-facility" in log_opts:
                annotations["log.console.facility"] = log_opts["syslog-facility"]
        else:
            # iSulad default driver without a file
            common["LogDriver"] = DEFAULT_LOG_DRIVER
            common["LogPath"] = DEFAULT_LOG_PATH
            annotations["log.console.driver"] = DEFAULT_LOG_DRIVER
            annotations["log.console.file"] = DEFAULT_LOG_PATH
            annotations["log.console.filerotate"] = DEFAULT_LOG_ROTATE
            annotations["log.console.filesize"] = DEFAULT_LOG_SIZE
    return opt


def v2_opts_from_host_config(host: Optional[Dict]) -> List[V2ConfigOpt]:
    if not host:
        return []
    opts = []
    if host.get("OomScoreAdj"):
        opts.append(v2_config_with_oom_score_adj(host["OomScoreAdj"]))
    if host.get("FilesLimit"):
        opts.append(v2_config_with_files_limit(host["FilesLimit"]))
    return opts


def reconcile_v2_config(v2: Dict, base_path: str, opts: List[V2ConfigOpt]) -> Dict[str, str]:
    """
    Apply options and point the container at its new bundle directory.

    Args:
        v2: iSulad v2 config, modified in place
        base_path: Bundle directory of the container
        opts: Reconcile options applied first, in order

    Returns:
        Docker's original paths of the network files, keyed by file name
    """
    for opt in opts:
        opt(v2)

    common = v2["CommonConfig"]
    origins = {
        HOSTS_FILE: common.get("HostsPath", ""),
        HOSTNAME_FILE: common.get("HostnamePath", ""),
        RESOLV_FILE: common.get("ResolvConfPath", ""),
    }
    common["HostsPath"] = os.path.join(base_path, HOSTS_FILE)
    common["HostnamePath"] = os.path.join(base_path, HOSTNAME_FILE)
    common["ResolvConfPath"] = os.path.join(base_path, RESOLV_FILE)
    common["ShmPath"] = os.path.join(base_path, "mounts", "shm")

    _annotations(v2)["rootfs.mount"] = ROOTFS_MOUNT

    common["Created"] = to_local_time(common.get("Created", ""))
    state = v2.setdefault("State", {})
    state.pop("Paused", None)
    state.pop("Running", None)
    state["StartedAt"] = to_local_time(state.get("StartedAt", ""))
    state["FinishedAt"] = datetime.now().astimezone().isoformat()

    name = common.get("Name", "")
    if name.startswith("/"):
        common["Name"] = name[1:]
    return origins


# OCI spec

def _shared_namespace_container(ns_type: str, host: Dict) -> str:
    modes = {"ipc": "IpcMode", "pid": "PidMode", "network": "NetworkMode"}
    key = modes.get(ns_type)
    if key is None:
        return ""
    parts = (host.get(key) or "").split(":", 1)
    if len(parts) > 1 and parts[0] == "container" and len(parts[1]) == CONTAINER_ID_LEN:
        return parts[1]
    return ""


def oci_add_must_devices(spec: Dict):
    resources = spec.setdefault("linux", {}).setdefault("resources", {})
    devices = resources.get("devices") or []
    for major, minor in MUST_DEVICES:
        exists = any(item.get("major") == major and item.get("minor") == minor for item in devices)
        if not exists:
            devices.append({"allow": True, "type": "c", "major": major, "minor": minor, "access": "rwm"})
    resources["devices"] = devices


def reconcile_oci_config(spec: Dict, common: Dict, host: Dict):
    """Rewrite an OCI spec so that it describes the container's iSulad bundle."""
    container_id = common.get("id", "")
    annotations = spec.get("annotations") or {}
    annotations.update((common.get("Config") or {}).get("Annotations") or {})
    spec["annotations"] = annotations

    spec.setdefault("root", {})["path"] = common.get("BaseFs", "")

    linux = spec.setdefault("linux", {})
    cgroup_dir = annotations.setdefault("cgroup.dir", DEFAULT_CGROUP_DIR)
    linux["cgroupsPath"] = os.path.join(cgroup_dir, container_id)

    # pid, ipc and network might be shared with another container
    for namespace in linux.get("namespaces") or []:
        peer = _shared_namespace_container(namespace.get("type", ""), host)
        if peer:
            namespace["path"] = peer
        else:
            namespace.pop("path", None)

    # a privileged container gets every device, no pty rules needed
    if not host.get("Privileged"):
        oci_add_must_devices(spec)

    sources = {
        "/etc/hostname": common.get("HostnamePath", ""),
        "/etc/resolv.conf": common.get("ResolvConfPath", ""),
        "/etc/hosts": common.get("HostsPath", ""),
        "/dev/shm": common.get("ShmPath", ""),
    }
    for mount in spec.get("mounts") or []:
        destination = mount.get("destination")
        if destination not in sources:
            continue
        mount["source"] = sources[destination]
        if destination == "/dev/shm":
            options = mount.get("options") or []
            options.extend(["mode=1777", f"size={host.get('ShmSize', 0)}"])
            mount["options"] = options

    # lxc cannot handle device paths containing ':'
    if linux.get("devices"):
        linux["devices"] = [dev for dev in linux["devices"] if ":" not in dev.get("path", "")]
