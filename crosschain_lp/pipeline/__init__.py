from crosschain_lp.pipeline.driver import MultiWalletDriver, RunSummary
from crosschain_lp.pipeline.orchestrator import StepOrchestrator
from crosschain_lp.pipeline.services import (
    PipelineServices,
    WalletContext,
    build_services,
)
from crosschain_lp.pipeline.state_store import StateStore
from crosschain_lp.pipeline.steps import Step

__all__ = [
    "MultiWalletDriver",
    "PipelineServices",
    "RunSummary",
    "StateStore",
    "Step",
    "StepOrchestrator",
    "WalletContext",
    "build_services",
]
