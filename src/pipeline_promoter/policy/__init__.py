"""
Pipeline Promoter Policy Module.

Provides the access policy consulted before promotions and approvals.
"""

__all__ = ["AccessPolicyStore", "PolicyChange"]

from pipeline_promoter.policy.store import AccessPolicyStore, PolicyChange
