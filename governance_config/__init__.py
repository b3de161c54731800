"""
governance_config -- Settings and lifecycle / approval definitions.

Responsibility:
    ``load_settings`` reads deployment settings from the environment.
    ``load_definition_set`` and ``install_definitions`` turn YAML
    definition files into installed, tenant-scoped definition rows.

Architecture position:
    Configuration.  Sits above ``governance_kernel``; the kernel never
    imports from this package.
"""

from governance_config.installer import InstalledDefinitions, install_definitions
from governance_config.loader import (
    DEFAULT_SETS_DIR,
    DefinitionSet,
    compute_checksum,
    load_definition_set,
    validate_definition_set,
)
from governance_config.settings import GovernanceSettings, load_settings

__all__ = [
    "DEFAULT_SETS_DIR",
    "DefinitionSet",
    "GovernanceSettings",
    "InstalledDefinitions",
    "compute_checksum",
    "install_definitions",
    "load_definition_set",
    "load_settings",
    "validate_definition_set",
]
