"""Consumers: Speaker, Auditor and HistorySearch on a shared lifecycle base."""

from slackrelay.consumers.auditor import Auditor
from slackrelay.consumers.base import Consumer, OutputRecord, Status
from slackrelay.consumers.history import HistorySearch
from slackrelay.consumers.speaker import Speaker

__all__ = ["Auditor", "Consumer", "HistorySearch", "OutputRecord", "Speaker", "Status"]
