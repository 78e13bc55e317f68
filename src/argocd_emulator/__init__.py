# ABOUTME: Argo CD emulator package initialization
# ABOUTME: Exposes the engine entry point and version information

"""
Argo CD emulator - a GitOps reconciliation engine that runs without a cluster.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

Argo CD watches Git repositories holding Kubernetes manifests, compares the
desired state (Git) with the live state (cluster) and synchronizes the two.
This package reproduces that control loop in-process, against simulated
repositories, hooks and clusters:

1. APPLICATIONS move through a sync/health state machine
2. SYNC OPERATIONS run PreSync, Sync and PostSync hooks and record history
3. SYNC WINDOWS and RBAC policies decide what may happen when
4. APPLICATIONSETS expand generators into owned applications
5. NOTIFICATIONS fan events out to channels

Everything external (time, Git, hook execution, manifest apply, drift,
notification delivery) is injected, so tests can drive the engine
deterministically.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

argocd_emulator/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── controller.py        <- ArgoCDEmulationEngine: command queue, queries
├── reconciler.py        <- State machine, sync lifecycle, drift, ApplicationSets
├── generators.py        <- List / Git / cluster generators and templating
├── policy.py            <- RBAC, sync windows, admission checks
├── notifications.py     <- Trigger matching and dispatch records
├── metrics.py           <- Dashboard aggregation
├── adapter.py           <- Declarative config in and out, defaults
├── models.py            <- Pydantic entity models
├── schedule.py          <- Sync window schedules (daily ranges, cron)
├── conditions.py        <- Notification trigger conditions
├── errors.py            <- Engine errors and CommandResult
├── config.py            <- Engine settings (env vars)
├── server.py            <- MCP server exposing the engine as tools
└── utils/
    ├── clock.py         <- System and manual clocks
    ├── logging.py       <- Structured logging with audit trails
    ├── resolver.py      <- Repository revision resolution
    ├── runtime.py       <- Hook runner, manifest applier, drift observer
    └── transport.py     <- HTTP notification delivery with retries
"""

from argocd_emulator.controller import ArgoCDEmulationEngine
from argocd_emulator.errors import CommandResult

__version__ = "0.1.0"

__all__ = ["ArgoCDEmulationEngine", "CommandResult", "__version__"]
