"""
ghost-rescue: private-relay bundle rescue for compromised accounts.

Usage:
    from ghost_rescue import RescueConfig, RescuePipeline

    pipeline = RescuePipeline.from_config(RescueConfig.from_env())
    outcome = pipeline.attempt(submit=False)
"""

from .backends import ForkBackend, LiveBackend
from .bundle import BundleAssembler, parse, serialize
from .builder import NonceLedger, TransactionBuilder
from .chain import ChainReader
from .config import GasPolicy, RescueConfig
from .errors import (
    CallRejected,
    ChainReadFailure,
    ConfigError,
    InsufficientBalance,
    InvalidIntent,
    PipelineCancelled,
    RelayUnavailable,
    RescueError,
    SimulationMismatch,
    StaleBundle,
    StepReverted,
    SubmissionRejected,
)
from .models import Bundle, ExecutionMode, Observation, SignedTransaction, TxIntent
from .pipeline import AttemptOutcome, RescuePipeline
from .relay import NoAuth, RelaySubmitter, SignatureAuth, authenticator_for
from .resolver import CancelToken, DependencyResolver, Resolution
from .signer import LocalSigner

__version__ = "0.1.0"
__all__ = [
    "AttemptOutcome",
    "CallRejected",
    "Bundle",
    "BundleAssembler",
    "CancelToken",
    "ChainReadFailure",
    "ChainReader",
    "ConfigError",
    "DependencyResolver",
    "ExecutionMode",
    "ForkBackend",
    "GasPolicy",
    "InsufficientBalance",
    "InvalidIntent",
    "LiveBackend",
    "LocalSigner",
    "NoAuth",
    "NonceLedger",
    "Observation",
    "PipelineCancelled",
    "RelaySubmitter",
    "RelayUnavailable",
    "RescueConfig",
    "RescueError",
    "RescuePipeline",
    "Resolution",
    "SignatureAuth",
    "SignedTransaction",
    "SimulationMismatch",
    "StaleBundle",
    "StepReverted",
    "SubmissionRejected",
    "TransactionBuilder",
    "TxIntent",
    "authenticator_for",
    "parse",
    "serialize",
]
