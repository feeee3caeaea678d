"""
Meetings module.

- store: meeting records (MeetingStore)
- service: create/update/delete meetings and their members, keeping
  member libraries in sync (meeting_library.meetings.service)
"""

from .store import Meeting, MeetingStore

__all__ = ["Meeting", "MeetingStore"]
