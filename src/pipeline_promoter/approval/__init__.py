"""
Pipeline Promoter Approval Module.

Human approval gates with deadlines.
"""

__all__ = ["ApprovalGate"]

from pipeline_promoter.approval.gate import ApprovalGate
