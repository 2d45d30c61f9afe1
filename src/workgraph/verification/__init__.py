from workgraph.verification.budget import BudgetCheck, check_budget, classify, limit_for
from workgraph.verification.commands import CommandResult, InfraFault, run_command
from workgraph.verification.gate import VerificationGate
from workgraph.verification.proofs import PROOF_STRATEGIES, ProofStrategy, strategy_for

__all__ = [
    "BudgetCheck",
    "CommandResult",
    "InfraFault",
    "PROOF_STRATEGIES",
    "ProofStrategy",
    "VerificationGate",
    "check_budget",
    "classify",
    "limit_for",
    "run_command",
    "strategy_for",
]
