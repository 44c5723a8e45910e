# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Facet Contributors

"""Facet - disposable context identities with private threshold disclosure.

A principal holds one root identity and derives any number of context
identities from it, one per use case. A secret value (a balance, a score)
is encrypted and committed to exactly one context, and a threshold proof
shows ``value >= threshold`` without revealing the value.

Architecture:
  Identity Deriver   (pure: root address, index -> context address)
    → Identity Registry  (root / context lifecycle over a ledger)
    → Commitment Binder  (ephemeral X25519 + oracle encryption + commitment)
    → Threshold Prover   (fixed predicate circuit over a proving backend)
    → Access Pipeline    (ensure identities, bind ∥ prove, package, revoke)

Collaborators (ledger, encryption oracle, proving backend) are protocols;
in-memory and local reference implementations ship with the package.
"""

__version__ = "0.3.0"

from . import (
    core as core,
)
