"""vaultrecall: local retrieval over a vault of markdown notes.

Lexical TF-IDF search, optional embedding search fused with Reciprocal Rank
Fusion, and link-graph proximity boosting around the note being edited.

Public API:
- VaultConfig
- IndexManager
- VaultSource
"""

from .config import VaultConfig
from .indexer.manager import IndexManager
from .indexer.source import VaultSource

__all__ = ["VaultConfig", "IndexManager", "VaultSource"]
