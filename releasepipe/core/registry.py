"""Template registry for named, versioned pipeline templates."""

import threading
from typing import Dict, List, Optional, Tuple
import logging

from .interfaces import PipelineTemplate
from .errors import DuplicateVersion, TemplateNotFound, VersionNotFound


def _part_key(part: str) -> Tuple:
    if part.isdigit():
        return (0, int(part), "")
    return (1, 0, part)


def _version_key(version: str) -> Tuple:
    """Sort key: dotted numeric parts compare numerically, text after numbers.

    A ``-suffix`` marks a prerelease, which sorts below the same version
    without one (``1.0.0-rc1`` < ``1.0.0``).
    """
    release, _, prerelease = version.partition('-')
    parts = tuple(_part_key(part) for part in release.split('.'))
    if prerelease:
        return (parts, 0, tuple(_part_key(part) for part in prerelease.split('.')))
    return (parts, 1, ())


class TemplateRegistry:
    """Write-once store of pipeline templates.

    Templates are immutable, so ``resolve`` hands out the published object
    itself. The lock only guards the slot index; it is never held while a
    caller uses a template.
    """

    def __init__(self):
        self._templates: Dict[str, Dict[str, PipelineTemplate]] = {}
        self._published_order: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def publish(self, template: PipelineTemplate) -> None:
        """Register a template version; raises DuplicateVersion if the slot is taken."""
        with self._lock:
            versions = self._templates.setdefault(template.name, {})
            if template.version in versions:
                raise DuplicateVersion(template.name, template.version)
            versions[template.version] = template
            self._published_order[template.key] = len(self._published_order)
        self.logger.info(f"Published template: {template.name} {template.version}")

    def resolve(self, name: str, version: Optional[str] = None) -> PipelineTemplate:
        """Resolve a template by name, and version if given (default: latest)."""
        with self._lock:
            versions = self._templates.get(name)
            if not versions:
                raise TemplateNotFound(name)
            if version is None:
                version = max(versions, key=lambda v: (_version_key(v), self._published_order[(name, v)]))
            template = versions.get(version)
        if template is None:
            raise VersionNotFound(name, version)
        self.logger.debug(f"Resolved template {name} {version}")
        return template

    def versions(self, name: str) -> List[str]:
        """Published versions of a template, oldest first."""
        with self._lock:
            versions = self._templates.get(name)
            if not versions:
                raise TemplateNotFound(name)
            return sorted(versions, key=lambda v: (_version_key(v), self._published_order[(name, v)]))

    def list_templates(self) -> List[PipelineTemplate]:
        """Every published template version."""
        with self._lock:
            templates = [t for versions in self._templates.values() for t in versions.values()]
        return sorted(templates, key=lambda t: (t.name, _version_key(t.version)))

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._templates

    def __len__(self) -> int:
        with self._lock:
            return sum(len(versions) for versions in self._templates.values())
