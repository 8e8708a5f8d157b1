"""Fake/mock implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without external dependencies:

- FakeEpisodeStore: In-memory episodes with compare-and-set commits
- FakeEventLog: Append-only event list with sequences
- FakeRecordStore: In-memory document collections
- FakeNotificationPort: Captured notifications for assertion
- FakeAccessPolicy: Recorded permission checks
- FakeWorkflowPort: Captured workflow calls for adapter tests
- FakeAutomationPort: Canned automation results
"""

from .access import FakeAccessPolicy
from .automation import FakeAutomationPort
from .notification import FakeNotificationPort
from .store import FakeEpisodeStore, FakeEventLog, FakeRecordStore
from .workflow import FakeWorkflowPort, make_episode

__all__ = [
    "FakeAccessPolicy",
    "FakeAutomationPort",
    "FakeEpisodeStore",
    "FakeEventLog",
    "FakeNotificationPort",
    "FakeRecordStore",
    "FakeWorkflowPort",
    "make_episode",
]
