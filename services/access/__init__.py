from .policy import AccessPolicy, PolicyDecision

__all__ = ["AccessPolicy", "PolicyDecision"]
