"""
Configuration Management Module

This module provides a centralized way to load and access configuration settings
from the config.yaml file. A single configuration dictionary is cached at module
level so every component (matcher, store, orchestrator, API) sees the same values.

The file is located by walking up from this package to the project root. Set the
FACE_AUTH_CONFIG environment variable to load a different file instead
(deployments tuning the match threshold, tests pointing at a temporary store).

Usage:
    from core.config import get_config
    config = get_config()
    threshold = config["matching"]["threshold"]
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


CONFIG_ENV_VAR = "FACE_AUTH_CONFIG"

# Store the singleton instance (module-level variable)
_config_instance: Optional[Dict[str, Any]] = None


def get_project_root() -> Path:
    """
    Find the project root directory.

    The project root is identified by the presence of config.yaml file.
    This function walks up the directory tree from this file's location
    until it finds config.yaml.

    Returns:
        Path: The absolute path to the project root directory.

    Raises:
        FileNotFoundError: If config.yaml cannot be found in any parent directory.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        if (current_dir / "config.yaml").exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "Could not find config.yaml in any parent directory. "
        "Make sure you're running from within the project directory."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Optional path to the config file. If not provided, the
                     FACE_AUTH_CONFIG environment variable is consulted, then
                     the default config.yaml in the project root.

    Returns:
        Dict containing all configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the config file contains invalid YAML.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR)

    if config_path is None:
        path = get_project_root() / "config.yaml"
    else:
        path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    return config or {}


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Get the configuration singleton.

    Args:
        reload: If True, forces reloading the configuration from disk.
                Useful for testing or if the config file has changed.

    Returns:
        Dict containing all configuration values.

    Example:
        config = get_config()
        max_attempts = config["verification"]["max_attempts"]
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Get a specific section from the configuration.

    Args:
        section_name: Name of the configuration section
                      (e.g., "matching", "storage", "credentials")

    Returns:
        Dict containing the section's configuration values.

    Raises:
        KeyError: If the section doesn't exist in the configuration.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name]


# Convenience functions for commonly used configuration sections
def get_matching_config() -> Dict[str, Any]:
    """Get embedding matching configuration."""
    return get_section("matching")


def get_enrollment_config() -> Dict[str, Any]:
    """Get enrollment session budget configuration."""
    return get_section("enrollment")


def get_verification_config() -> Dict[str, Any]:
    """Get verification session budget configuration."""
    return get_section("verification")


def get_storage_config() -> Dict[str, Any]:
    """Get descriptor store configuration."""
    return get_section("storage")


def get_credentials_config() -> Dict[str, Any]:
    """Get credential issuer configuration."""
    return get_section("credentials")


def get_embedding_oracle_config() -> Dict[str, Any]:
    """Get embedding oracle configuration."""
    return get_section("embedding_oracle")


def get_api_config() -> Dict[str, Any]:
    """Get API configuration."""
    return get_section("api")


def get_server_config() -> Dict[str, Any]:
    """
    Get server configuration for the API.

    Returns:
        Dict with host and port for the API server.
    """
    api_config = get_api_config()
    base_url = api_config.get("base_url", "http://localhost:8000")

    # Format: http://host:port
    host = "0.0.0.0"
    port = 8000

    try:
        url_part = base_url.split("//")[-1]
        if ":" in url_part:
            host_part, port_str = url_part.rsplit(":", 1)
            port = int(port_str.rstrip("/"))
            if host_part != "localhost":
                host = host_part
    except (ValueError, IndexError):
        pass

    return {"host": host, "port": port}


def resolve_project_path(path: str) -> Path:
    """Resolve a configured relative path against the project root."""
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return get_project_root() / candidate
