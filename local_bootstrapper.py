#!/usr/bin/env python3
"""Compatibility entrypoint for the local grid bootstrapper."""

from __future__ import annotations

import importlib
import sys


def _import_with_fallback(primary: str, fallback: str):
    try:
        return importlib.import_module(primary)
    except ModuleNotFoundError:
        # Copied next to the package under scripts/, the package is bootstrapper/.
        return importlib.import_module(fallback)


_engine = _import_with_fallback("scripts.bootstrapper.bootstrap_engine", "bootstrapper.bootstrap_engine")
_args = _import_with_fallback("scripts.bootstrapper.bootstrap_args", "bootstrapper.bootstrap_args")
_models = _import_with_fallback("scripts.bootstrapper.models", "bootstrapper.models")
_orchestrator = _import_with_fallback(
    "scripts.bootstrapper.bootstrap_orchestrator", "bootstrapper.bootstrap_orchestrator"
)


main = _engine.main
parse_args = _args.parse_args
validate_args = _args.validate_args

BootstrapOrchestrator = _orchestrator.BootstrapOrchestrator
BootstrapRequest = _models.BootstrapRequest
TeardownRequest = _models.TeardownRequest
LookupFilter = _models.LookupFilter
OrchestrationResult = _models.OrchestrationResult
OutcomeKind = _models.OutcomeKind


__all__ = [
    "BootstrapOrchestrator",
    "BootstrapRequest",
    "LookupFilter",
    "OrchestrationResult",
    "OutcomeKind",
    "TeardownRequest",
    "main",
    "parse_args",
    "validate_args",
]


if __name__ == "__main__":
    sys.exit(main())
