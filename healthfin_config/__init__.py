"""
healthfin_config -- single public entrypoint for the activity catalog.

Responsibility:
    Provides the ONLY way to obtain catalog configuration at runtime
    through ``get_active_catalog()``.  No other component reads the YAML
    sets directly.  Returns an ``ActivityCatalog`` -- activities,
    event adjacency and statement templates.

Architecture position:
    Configuration -- YAML-driven catalog, load-time validation.
    Sits above ``healthfin_kernel`` (whose domain types it produces) and
    below ``healthfin_services``.  The kernel and the engines MUST NEVER
    import from ``healthfin_config``.

Invariants enforced:
    - Single entrypoint: all runtime catalog data flows through
      ``get_active_catalog()``.
    - Load-time validation: referential integrity is checked before a
      catalog is compiled; every error is reported at once.
    - Deterministic compilation: the same YAML always produces the same
      catalog fingerprint.

Failure modes:
    - ``FileNotFoundError`` -- the configuration set does not exist.
    - ``CatalogIntegrityError`` -- validation failed; ``errors`` lists
      every problem found.

Audit relevance:
    Every successful ``get_active_catalog()`` call emits a
    ``HEALTHFIN_CATALOG_TRACE`` log entry with the catalog name, version,
    fingerprint and sizes.  Statement metadata carries the fingerprint,
    tying every rendered statement to the catalog that produced it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from healthfin_config.compiler import compile_catalog, restrict_catalog
from healthfin_config.loader import load_config_set
from healthfin_config.validator import validate_configuration
from healthfin_kernel.domain.catalog import ActivityCatalog
from healthfin_kernel.exceptions import CatalogIntegrityError

_logger = logging.getLogger("healthfin.config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
DEFAULT_SET = "default"


def get_active_catalog(
    project_type: str | None = None,
    facility_type: str | None = None,
    config_dir: Path | None = None,
    set_name: str = DEFAULT_SET,
) -> ActivityCatalog:
    """
    The ONLY public catalog entrypoint.

    Args:
        project_type: Narrow the activities to one project (code or alias).
        facility_type: Narrow the activities to one facility type.
        config_dir: Override path to the configuration sets directory.
        set_name: Configuration set subdirectory.

    Raises:
        FileNotFoundError: If the configuration set is missing.
        CatalogIntegrityError: If validation fails.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    set_dir = sets_dir / set_name
    if not set_dir.is_dir():
        raise FileNotFoundError(f"Catalog configuration set not found: {set_dir}")

    config_set = load_config_set(set_dir)

    validation = validate_configuration(config_set)
    for warning in validation.warnings:
        _logger.warning("catalog_validation_warning", extra={"warning": warning})
    if not validation.is_valid:
        raise CatalogIntegrityError(config_set.name, validation.errors)

    catalog = compile_catalog(config_set)

    _logger.info(
        "HEALTHFIN_CATALOG_TRACE",
        extra={
            "trace_type": "HEALTHFIN_CATALOG_TRACE",
            "catalog_name": catalog.name,
            "catalog_version": catalog.version,
            "fingerprint": catalog.fingerprint,
            "activity_count": len(catalog.activities),
            "event_count": len(catalog.events),
            "statement_count": len(catalog.statements),
        },
    )

    return restrict_catalog(catalog, project_type, facility_type)


__all__ = ["get_active_catalog"]
