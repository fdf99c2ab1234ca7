"""
SLOPPY Plugin Registry

Hosts every analyzer the orchestrator may run. Built-in analyzers are
registered as a first tier; plugins loaded from disk form a second tier
and lose to a built-in of the same name. Nothing found on disk runs until
it has passed manifest validation and been registered.

Supported plugin files:
  *.py         module exporting PLUGIN, or `manifest` + `analyzer`
  *.yml/*.yaml regex pattern manifest (see sloppy.analyzers.patterns)
  <dir>/plugin.yml  same as above, one plugin per directory
"""

from __future__ import annotations

import importlib.util
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from sloppy.analyzers import BaseAnalyzer, builtin_analyzers
from sloppy.analyzers.patterns import PatternAnalyzer, PatternFilters, PatternRule
from sloppy.state import IssueType

_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


class PluginValidationError(Exception):
    pass


class PluginManifest(BaseModel):
    name: str
    version: str
    description: str = ""
    issue_types: list[IssueType] = Field(default_factory=list)
    entry_point: str = ""
    author: str | None = None
    tags: list[str] = Field(default_factory=list)
    builtin: bool = False


@dataclass
class AnalyzerPlugin:
    manifest: PluginManifest
    analyzer: BaseAnalyzer
    enabled: bool = True
    source: Path | None = None

    @property
    def name(self) -> str:
        return self.manifest.name


@dataclass
class PluginLoadReport:
    plugins: list[AnalyzerPlugin] = field(default_factory=list)
    errors: list[tuple[Path, str]] = field(default_factory=list)


def validate_plugin(plugin: AnalyzerPlugin) -> None:
    manifest = plugin.manifest
    if not isinstance(manifest.name, str) or not manifest.name.strip():
        raise PluginValidationError("Plugin manifest must have a name")
    if not _SEMVER.match(manifest.version or ""):
        raise PluginValidationError(
            f"Plugin '{manifest.name}' version '{manifest.version}' is not a semantic version"
        )
    if not manifest.issue_types:
        raise PluginValidationError(f"Plugin '{manifest.name}' declares no issue types")
    if not manifest.entry_point:
        raise PluginValidationError(f"Plugin '{manifest.name}' has no entry point")
    if not callable(getattr(plugin.analyzer, "detect", None)):
        raise PluginValidationError(f"Plugin '{manifest.name}' analyzer must implement detect()")


def create_plugin(analyzer: BaseAnalyzer, version: str = "1.0.0", builtin: bool = False, **extra: Any) -> AnalyzerPlugin:
    """Wrap an analyzer instance in a manifest derived from its attributes."""
    cls = type(analyzer)
    manifest = PluginManifest(
        name=extra.pop("name", analyzer.name),
        version=version,
        description=extra.pop("description", analyzer.description),
        issue_types=list(extra.pop("issue_types", analyzer.issue_types)),
        entry_point=extra.pop("entry_point", f"{cls.__module__}:{cls.__qualname__}"),
        builtin=builtin,
        **extra,
    )
    return AnalyzerPlugin(manifest=manifest, analyzer=analyzer)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class PluginRegistry:
    def __init__(self):
        self._builtin: dict[str, AnalyzerPlugin] = {}
        self._external: dict[str, AnalyzerPlugin] = {}
        self._lock = threading.Lock()

    def register(self, plugin: AnalyzerPlugin) -> None:
        validate_plugin(plugin)
        name = plugin.manifest.name
        with self._lock:
            tier = self._builtin if plugin.manifest.builtin else self._external
            if name in tier:
                raise PluginValidationError(f"Plugin '{name}' is already registered")
            if not plugin.manifest.builtin and name in self._builtin:
                logger.warning(f"[PLUGINS] '{name}' collides with a built-in analyzer; the built-in wins")
            tier[name] = plugin
        logger.debug(f"[PLUGINS] Registered {name} v{plugin.manifest.version}")

    def unregister(self, name: str) -> bool:
        with self._lock:
            if name in self._external:
                del self._external[name]
                return True
            return self._builtin.pop(name, None) is not None

    def get(self, name: str) -> AnalyzerPlugin | None:
        with self._lock:
            return self._builtin.get(name) or self._external.get(name)

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def enable(self, name: str) -> None:
        self._set_enabled(name, True)

    def disable(self, name: str) -> None:
        self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> None:
        plugin = self.get(name)
        if plugin is None:
            raise KeyError(f"Unknown plugin: {name}")
        plugin.enabled = enabled

    def list(self) -> list[AnalyzerPlugin]:
        """Built-ins in registration order, then unshadowed externals."""
        with self._lock:
            externals = [p for n, p in self._external.items() if n not in self._builtin]
            return list(self._builtin.values()) + externals

    def list_for(self, issue_types: list[IssueType] | None = None) -> list[BaseAnalyzer]:
        """Enabled analyzers able to report any of the requested issue types."""
        wanted = set(issue_types) if issue_types is not None else set(IssueType)
        return [
            p.analyzer
            for p in self.list()
            if p.enabled and wanted.intersection(p.manifest.issue_types)
        ]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _load_pattern_plugin(path: Path) -> AnalyzerPlugin:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise PluginValidationError(f"Failed to read plugin manifest {path}: {e}") from e
    if not isinstance(data, dict):
        raise PluginValidationError(f"Plugin manifest {path} must be a mapping")

    try:
        rules = [PatternRule(**p) for p in data.get("patterns") or []]
        filters = PatternFilters(**(data.get("filters") or {}))
    except (ValidationError, TypeError) as e:
        raise PluginValidationError(f"Invalid patterns in {path}: {e}") from e
    if not rules:
        raise PluginValidationError(f"Plugin manifest {path} defines no patterns")

    name = str(data.get("name") or "")
    analyzer = PatternAnalyzer(name, str(data.get("description") or ""), rules, filters)
    try:
        manifest = PluginManifest(
            name=name,
            version=str(data.get("version") or ""),
            description=str(data.get("description") or ""),
            issue_types=list(analyzer.issue_types),
            entry_point=f"{path}:patterns",
            author=data.get("author"),
            tags=list(data.get("tags") or []),
        )
    except ValidationError as e:
        raise PluginValidationError(f"Invalid manifest in {path}: {e}") from e
    plugin = AnalyzerPlugin(manifest=manifest, analyzer=analyzer, source=path)
    validate_plugin(plugin)
    return plugin


def _load_python_plugin(path: Path) -> AnalyzerPlugin:
    module_name = "sloppy_plugin_" + re.sub(r"\W", "_", path.stem)
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PluginValidationError(f"Cannot import plugin from {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise PluginValidationError(f"Failed to load plugin from {path}: {e}") from e

    plugin = getattr(module, "PLUGIN", None)
    if plugin is None:
        manifest = getattr(module, "manifest", None)
        analyzer = getattr(module, "analyzer", None)
        if manifest is None or analyzer is None:
            raise PluginValidationError(
                f"Plugin {path} must export PLUGIN or both `manifest` and `analyzer`"
            )
        if isinstance(manifest, dict):
            manifest = {"entry_point": f"{path}:analyzer", **manifest}
            try:
                manifest = PluginManifest(**manifest)
            except ValidationError as e:
                raise PluginValidationError(f"Invalid manifest in {path}: {e}") from e
        plugin = AnalyzerPlugin(manifest=manifest, analyzer=analyzer)

    if not isinstance(plugin, AnalyzerPlugin) or not isinstance(plugin.manifest, PluginManifest):
        raise PluginValidationError(f"Plugin {path} does not export an AnalyzerPlugin")
    plugin.manifest.builtin = False
    plugin.source = path
    validate_plugin(plugin)
    return plugin


def load_plugin_from_path(path: str | Path) -> AnalyzerPlugin:
    """Load and validate one plugin. Nothing is registered."""
    path = Path(path)
    if path.is_dir():
        for candidate in ("plugin.yml", "plugin.yaml", "plugin.py"):
            if (path / candidate).is_file():
                return load_plugin_from_path(path / candidate)
        raise PluginValidationError(f"No plugin.yml or plugin.py in {path}")
    if not path.is_file():
        raise PluginValidationError(f"Plugin not found: {path}")
    if path.suffix in (".yml", ".yaml"):
        return _load_pattern_plugin(path)
    if path.suffix == ".py":
        return _load_python_plugin(path)
    raise PluginValidationError(f"Unsupported plugin file type: {path.name}")


def load_plugins_from_directory(directory: str | Path) -> PluginLoadReport:
    """Load every plugin in a directory; one broken plugin never blocks the rest."""
    report = PluginLoadReport()
    directory = Path(directory)
    if not directory.is_dir():
        return report

    for entry in sorted(directory.iterdir()):
        if entry.name.startswith((".", "_")):
            continue
        if entry.is_file() and entry.suffix not in (".py", ".yml", ".yaml"):
            continue
        try:
            report.plugins.append(load_plugin_from_path(entry))
        except PluginValidationError as e:
            logger.warning(f"[PLUGINS] Failed to load plugin {entry.name}: {e}")
            report.errors.append((entry, str(e)))
    return report


def default_registry(
    plugin_dirs: list[Path] | None = None,
    disabled: list[str] | None = None,
) -> PluginRegistry:
    """Registry with every built-in plus whatever loads cleanly from plugin_dirs."""
    registry = PluginRegistry()
    for analyzer in builtin_analyzers():
        registry.register(create_plugin(analyzer, builtin=True))

    for directory in plugin_dirs or []:
        report = load_plugins_from_directory(directory)
        for plugin in report.plugins:
            try:
                registry.register(plugin)
            except PluginValidationError as e:
                logger.warning(f"[PLUGINS] Rejected {plugin.name}: {e}")

    for name in disabled or []:
        if registry.has(name):
            registry.disable(name)
        else:
            logger.warning(f"[PLUGINS] Cannot disable unknown analyzer '{name}'")
    return registry
