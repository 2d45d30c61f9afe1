from workgraph.review.critic import AgentCritic, parse_review_findings
from workgraph.review.gate import ReviewGate
from workgraph.review.scanners import Finding, parse_added_lines

__all__ = ["AgentCritic", "Finding", "ReviewGate", "parse_added_lines", "parse_review_findings"]
