"""
Meeting attendance tracking.

  - classifier:      ordered rules mapping calendar signals to an outcome
  - outcomes:        follow-up tasks and messages per outcome
  - meeting_tracker: pre- and post-meeting sweeps
"""
from tracking.classifier import Classification, classify, gather_signals
from tracking.meeting_tracker import MeetingTracker

__all__ = ["Classification", "classify", "gather_signals", "MeetingTracker"]
