"""
Cluster Remediator - AI-directed Kubernetes diagnosis and remediation.

Investigates a reported issue through a bounded loop of model-proposed,
whitelisted kubectl queries, converges on a root cause, and gates the
resulting remediation plan on confidence, risk and execution mode.
"""

__version__ = "0.4.0"
