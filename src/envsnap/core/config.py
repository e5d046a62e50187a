"""Configuration management for envsnap."""

from __future__ import annotations

import copy
import os
import platform
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from rich.console import Console

from .models import ConflictPolicy

console = Console()

DEFAULT_CONFIG_FILE = "~/.config/envsnap/config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "home": "~",
    "machine_id": None,
    "state_dir": "~/.envsnap",
    "blob_dir": "~/.envsnap/blobs",
    "inline_limit": 2048,
    "chunk_size": 1024 * 1024,
    "collector_timeout": 120,
    "collector_timeouts": {"packages": 600, "applications": 300},
    "max_workers": 4,
    "domains": ["packages", "applications", "dotfiles", "ssh-keys", "preferences"],
    "domain_order": ["ssh-keys", "packages", "applications", "dotfiles", "preferences"],
    "domain_dependencies": {
        "packages": ["ssh-keys"],
        "applications": ["ssh-keys"],
        "dotfiles": ["packages", "applications"],
        "preferences": ["applications"],
    },
    "policies": {
        "packages": "install-missing",
        "applications": "install-missing",
        "dotfiles": "side-by-side",
        "ssh-keys": "skip",
        "preferences": "skip",
    },
    "conflict_suffix": ".envsnap",
    "storage": {
        "kind": "local",
        "path": "~/.envsnap/store",
        "remote": None,
        "branch": "main",
        "sync_timeout": 60.0,
        "poll_interval": 1.0,
        "placeholder_patterns": ["*.icloud", ".*.icloud", "*.tmp", "*.partial", ".~*"],
        "git_user_name": "envsnap",
        "git_user_email": "envsnap@localhost",
    },
    "package_managers": {
        "brew": {
            "domain": "packages",
            "list": ["brew", "list", "--formula", "--versions"],
            "install": ["brew", "install", "{name}"],
        },
        "vscode": {
            "domain": "packages",
            "list": ["code", "--list-extensions", "--show-versions"],
            "install": ["code", "--install-extension", "{name}"],
            "pattern": r"^(?P<name>[^@\s]+)@(?P<version>\S+)",
        },
        "npm": {
            "domain": "packages",
            "list": ["npm", "ls", "--global", "--depth=0", "--parseable", "--long"],
            "install": ["npm", "install", "--global", "{name}"],
            "pattern": r"^.*:(?P<name>(?:@[^@/:]+/)?[^@:]+)@(?P<version>[^:\s]+)",
        },
        "cask": {
            "domain": "applications",
            "list": ["brew", "list", "--cask", "--versions"],
            "install": ["brew", "install", "--cask", "{name}"],
        },
        "mas": {
            "domain": "applications",
            "list": ["mas", "list"],
            "install": ["mas", "install", "{name}"],
            "pattern": r"^(?P<name>\d+)\s+.*?\((?P<version>[^)]+)\)\s*$",
        },
    },
    "application_dirs": ["/Applications", "~/Applications"],
    "dotfiles": [
        ".zshrc",
        ".zprofile",
        ".bashrc",
        ".bash_profile",
        ".gitconfig",
        ".gitignore_global",
        ".vimrc",
        ".tmux.conf",
        ".config/starship.toml",
        ".config/git/",
    ],
    "dotfile_excludes": [".DS_Store", "Thumbs.db", "desktop.ini", "__pycache__"],
    "ssh": {
        "dir": ".ssh",
        "include": ["id_*", "*.pub", "config"],
        "exclude": ["known_hosts", "known_hosts.old", "authorized_keys"],
    },
    "preferences": ["com.apple.dock", "com.apple.finder", "NSGlobalDomain"],
}

ENV_OVERRIDES = {
    "ENVSNAP_HOME": ("home",),
    "ENVSNAP_BLOB_DIR": ("blob_dir",),
    "ENVSNAP_STATE_DIR": ("state_dir",),
    "ENVSNAP_STORAGE": ("storage", "path"),
    "ENVSNAP_STORAGE_KIND": ("storage", "kind"),
}

STORAGE_KINDS = ("local", "cloud", "git")


def _deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


class Config:
    """Configuration class for envsnap."""

    def __init__(self, config_file: Optional[Path] = None, use_env: bool = True) -> None:
        """Initialize configuration.

        Args:
            config_file: Optional YAML file merged over the defaults.
            use_env: Whether ``ENVSNAP_*`` variables override settings.
        """
        self.config: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
        self.load_config(config_file)
        if use_env:
            self._apply_env()

    def load_config(self, config_file: Optional[Path] = None) -> None:
        """Load configuration from file."""
        if config_file is None:
            env_file = os.environ.get("ENVSNAP_CONFIG")
            default_file = Path(DEFAULT_CONFIG_FILE).expanduser()
            if env_file:
                config_file = Path(env_file)
            elif default_file.exists():
                config_file = default_file
            else:
                return

        try:
            with open(Path(config_file).expanduser(), "r") as f:
                user_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config file: {e}[/red]")
            return
        if user_config:
            self._merge_config(user_config)

    def _apply_env(self) -> None:
        for var, keys in ENV_OVERRIDES.items():
            value = os.environ.get(var)
            if not value:
                continue
            target = self.config
            for key in keys[:-1]:
                target = target.setdefault(key, {})
            target[keys[-1]] = value

    def _merge_config(self, config: Dict[str, Any]) -> None:
        """Merge configuration with current configuration."""
        if not isinstance(config, dict):
            raise ValueError("Configuration must be a dictionary")

        for key in ("domains", "domain_order", "dotfiles", "dotfile_excludes", "preferences"):
            if key in config and not isinstance(config[key], list):
                raise ValueError(f"{key} must be a list")

        for key in ("policies", "storage", "package_managers", "ssh", "collector_timeouts"):
            if key in config and not isinstance(config[key], dict):
                raise ValueError(f"{key} must be a dictionary")

        for domain, policy in config.get("policies", {}).items():
            try:
                ConflictPolicy(policy)
            except ValueError:
                raise ValueError(f"Unknown conflict policy '{policy}' for {domain}") from None

        for name, settings in config.get("package_managers", {}).items():
            if not isinstance(settings, dict):
                raise ValueError(f"Package manager configuration for {name} must be a dictionary")

        for entry in config.get("dotfiles", []):
            if isinstance(entry, dict) and "path" not in entry:
                raise ValueError("Dotfile entries must be strings or have a path")

        _deep_merge(self.config, config)

    def validate(self) -> List[str]:
        """Validate configuration."""
        errors = []

        if self.storage.get("kind") not in STORAGE_KINDS:
            errors.append(f"storage kind must be one of {', '.join(STORAGE_KINDS)}")
        if self.storage.get("kind") == "git" and not self.storage.get("remote"):
            errors.append("git storage requires a remote")

        for key in ("inline_limit", "chunk_size", "max_workers"):
            value = self.config.get(key)
            if not isinstance(value, int) or value < 0:
                errors.append(f"{key} must be a non-negative integer")
            elif value == 0 and key != "inline_limit":
                errors.append(f"{key} must be positive")

        for name, settings in self.package_managers.items():
            for key in ("list", "install"):
                if not isinstance(settings.get(key), list) or not settings.get(key):
                    errors.append(f"package manager {name} needs a {key} command")

        for domain, deps in self.domain_dependencies.items():
            if not isinstance(deps, list):
                errors.append(f"dependencies of {domain} must be a list")

        return errors

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: The configuration key to get.
            default: The default value to return if the key is not found.

        Returns:
            The configuration value, or the default if not found.
        """
        return self.config.get(key, default)

    @property
    def home(self) -> Path:
        return Path(self.config["home"]).expanduser()

    @property
    def state_dir(self) -> Path:
        return Path(self.config["state_dir"]).expanduser()

    @property
    def blob_dir(self) -> Path:
        return Path(self.config["blob_dir"]).expanduser()

    @property
    def machine_id(self) -> str:
        return self.config.get("machine_id") or platform.node() or "unknown"

    @property
    def inline_limit(self) -> int:
        return int(self.config["inline_limit"])

    @property
    def chunk_size(self) -> int:
        return int(self.config["chunk_size"])

    @property
    def max_workers(self) -> int:
        return int(self.config["max_workers"])

    @property
    def domains(self) -> List[str]:
        return list(self.config["domains"])

    @property
    def domain_order(self) -> List[str]:
        return list(self.config["domain_order"])

    @property
    def domain_dependencies(self) -> Dict[str, List[str]]:
        return dict(self.config["domain_dependencies"])

    @property
    def storage(self) -> Dict[str, Any]:
        return self.config["storage"]

    @property
    def package_managers(self) -> Dict[str, Dict[str, Any]]:
        return self.config["package_managers"]

    def collector_timeout(self, domain: str) -> float:
        return float(
            self.config["collector_timeouts"].get(domain, self.config["collector_timeout"])
        )

    def policies(self) -> Dict[str, ConflictPolicy]:
        return {domain: ConflictPolicy(policy) for domain, policy in self.config["policies"].items()}
