# cpe_scanner/engine.py
import logging
from pathlib import Path
from typing import Iterable, Optional

from .config import Settings
from .cpe_analyzer import CpeAnalyzer
from .cpe_index import CpeIndex
from .exceptions import DatabaseError, UpdateError
from .file_name import collect_file_name_evidence
from .models import Confidence, Dependency
from .scanner import attach_vulnerabilities
from .suppression import SuppressionRules
from .updater import NvdCveUpdater, UpdateState
from .vulndb import CveDB

logger = logging.getLogger(__name__)


def collect_files(paths: Iterable) -> list[Path]:
    """Expands directories into the files beneath them; plain files are kept as given."""
    files = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(sorted(p for p in path.rglob("*") if p.is_file()))
        elif path.is_file():
            files.append(path)
        else:
            logger.warning(f"Skipping '{path}': not a file or directory")
    return files


class Engine:
    """Owns the store and index for one run and drives update, identification and lookup."""

    def __init__(self, settings: Settings, downloader=None):
        self.settings = settings
        self.cve_db = CveDB(settings.database_file, timeout=settings.database_timeout)
        self.cpe_index = CpeIndex(settings.cpe_index_file, timeout=settings.database_timeout)
        self.analyzer = CpeAnalyzer(self.cve_db, self.cpe_index, settings)
        self.suppression = SuppressionRules.from_settings(settings)
        self.updater = NvdCveUpdater(settings, self.cve_db, self.cpe_index, downloader)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def update(self) -> UpdateState:
        return self.updater.update()

    def _update_quietly(self):
        try:
            state = self.update()
            if state == UpdateState.FAILED:
                logger.warning("Continuing with the existing (possibly stale) vulnerability data.")
        except UpdateError as e:
            logger.error(f"Unable to update the vulnerability data: {e}; continuing with existing data.")
            logger.debug("Update failure", exc_info=True)

    def analyze_dependency(self, dependency: Dependency) -> Dependency:
        self.analyzer.analyze(dependency)
        try:
            attach_vulnerabilities(self.cve_db, dependency)
        except DatabaseError as e:
            logger.warning(f"Unable to look up vulnerabilities for {dependency.name}: {e}")
        self.suppression.apply(dependency)
        return dependency

    def scan(self, paths: Iterable, auto_update: Optional[bool] = None) -> list[Dependency]:
        if self.settings.auto_update if auto_update is None else auto_update:
            self._update_quietly()
        dependencies = []
        for path in collect_files(paths):
            dependency = Dependency.from_file(path)
            collect_file_name_evidence(dependency)
            dependencies.append(self.analyze_dependency(dependency))
        logger.info(f"Scanned {len(dependencies)} files.")
        return dependencies

    def identify(self, vendor: str, product: str, version: Optional[str] = None) -> Dependency:
        """Identifies a component described only by vendor, product and (optionally) version."""
        dependency = Dependency(display_file_name=f"{vendor}:{product}" + (f":{version}" if version else ""))
        dependency.vendor_evidence.add_evidence("cli", "vendor", vendor, Confidence.HIGHEST)
        dependency.product_evidence.add_evidence("cli", "product", product, Confidence.HIGHEST)
        if version:
            dependency.version_evidence.add_evidence("cli", "version", version, Confidence.HIGHEST)
        return self.analyze_dependency(dependency)

    def close(self):
        self.cve_db.close()
        self.cpe_index.close()
