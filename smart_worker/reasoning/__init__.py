"""Repair pipeline components."""

from smart_worker.reasoning.consensus import ConsensusResolver, MajorityResult, majority_vote
from smart_worker.reasoning.context_extractor import (
    FailureContextExtractor,
    normalize_error_message,
    parse_stack_frames,
)
from smart_worker.reasoning.fix_synthesizer import (
    FixProposal,
    FixSynthesizer,
    parse_code_changes,
)
from smart_worker.reasoning.memory_writer import MemoryWriter
from smart_worker.reasoning.pipeline import PipelineOutcome, PipelineStatus, RepairPipeline
from smart_worker.reasoning.supervisor import (
    FailedJobHandler,
    PipelineSupervisor,
    QueueBackend,
)

__all__ = [
    "ConsensusResolver",
    "MajorityResult",
    "majority_vote",
    "FailureContextExtractor",
    "normalize_error_message",
    "parse_stack_frames",
    "FixProposal",
    "FixSynthesizer",
    "parse_code_changes",
    "MemoryWriter",
    "PipelineOutcome",
    "PipelineStatus",
    "RepairPipeline",
    "FailedJobHandler",
    "PipelineSupervisor",
    "QueueBackend",
]
