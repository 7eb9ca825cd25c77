"""PID files of running bench servers, so only one owns the serial ports."""

from pathlib import Path

import psutil
import simplejson as json
from loguru import logger

from chamberbench.util.defaults import HOME_DIR


def get_servers_dir() -> Path:
    """Get the directory for storing server PID files."""
    servers_dir = Path(HOME_DIR) / "running_servers"
    servers_dir.mkdir(parents=True, exist_ok=True)
    return servers_dir


def list_running_servers() -> list[dict]:
    """Get info about all servers with a PID file."""
    servers = []
    for pid_file in get_servers_dir().glob("server_*.json"):
        try:
            with pid_file.open() as f:
                server_info = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.warning("Unreadable server file {}", pid_file)
            continue
        try:
            psutil.Process(server_info["pid"])
            server_info["running"] = True
        except psutil.NoSuchProcess:
            server_info["running"] = False
        servers.append(server_info)
    return servers


def kill_bench_servers() -> int:
    """Find and kill all running bench server processes."""
    killed = 0
    for pid_file in get_servers_dir().glob("server_*.json"):
        try:
            with pid_file.open() as f:
                server_info = json.load(f)

            pid = server_info["pid"]
            try:
                proc = psutil.Process(pid)
                logger.info(
                    "Killing server PID {} started at {}", pid, server_info["timestamp"]
                )
                proc.kill()
                killed += 1
            except psutil.NoSuchProcess:
                logger.debug("Server PID {} no longer exists", pid)

            pid_file.unlink()
        except Exception as e:
            logger.error("Error processing {}: {}", pid_file, e)
            continue

    return killed


def cleanup_stale_servers() -> int:
    """Remove PID files for servers that no longer exist."""
    removed = 0
    for server_info in list_running_servers():
        if not server_info["running"]:
            pid_file = get_servers_dir() / f"server_{server_info['pid']}.json"
            pid_file.unlink(missing_ok=True)
            removed += 1
    return removed
