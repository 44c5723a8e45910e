"""Identity management for Facet: one root per principal, many contexts.

Key concepts:
- **RootIdentity**: The single top-level identity of a principal.
- **ContextIdentity**: A disposable sub-identity at a sequential index.
- **Ledger**: Durable store and serialisation point for identity records.
- **IdentityRegistry**: Service layer for creating, resolving and revoking.

Security properties:
- Context addresses are deterministic and regenerable from the root address.
- Indices are never reused; revocation is one-way.
- The ledger sees which root owns a context. Only committed values are hidden.
"""

from facet.identity.derivation import derive_context_address, derive_root_address
from facet.identity.ledger import InMemoryLedger, Ledger
from facet.identity.models import (
    ContextCategory,
    ContextIdentity,
    Outcome,
    OutcomeStatus,
    PrivacyLevel,
    RootIdentity,
)
from facet.identity.registry import IdentityRegistry

__all__ = [
    "ContextCategory",
    "ContextIdentity",
    "IdentityRegistry",
    "InMemoryLedger",
    "Ledger",
    "Outcome",
    "OutcomeStatus",
    "PrivacyLevel",
    "RootIdentity",
    "derive_context_address",
    "derive_root_address",
]
