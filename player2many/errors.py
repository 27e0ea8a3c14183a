"""
Error taxonomy shared by the signaling core.
"""

from __future__ import annotations


class SignalingError(RuntimeError):
    """Base class for signaling related errors."""

    code = "E_SIGNALING"


class DuplicateSession(SignalingError):
    """Raised when a session is created for an identity that already has one."""

    code = "E_DUPLICATE_SESSION"


class AlreadyNegotiating(SignalingError):
    """Raised when an offer arrives for a session that already left ``NEW``."""

    code = "E_ALREADY_NEGOTIATING"


class NegotiationFailed(SignalingError):
    """Raised when a backend round-trip fails while processing an offer."""

    code = "E_NEGOTIATION_FAILED"


class PublisherNotReady(SignalingError):
    """Raised when a viewer connects before any publish has started."""

    code = "E_PUBLISHER_NOT_READY"


class CandidateApplyFailed(SignalingError):
    """Raised when a single ICE candidate cannot be applied to an endpoint."""

    code = "E_CANDIDATE_APPLY"


class PipelineCreateFailed(SignalingError):
    """Raised when the shared pipeline or its source endpoint cannot be created."""

    code = "E_PIPELINE_CREATE"


__all__ = [
    "SignalingError",
    "DuplicateSession",
    "AlreadyNegotiating",
    "NegotiationFailed",
    "PublisherNotReady",
    "CandidateApplyFailed",
    "PipelineCreateFailed",
]
