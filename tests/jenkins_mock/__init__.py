"""Jenkins Mock for Integration Testing.

In-memory implementation of the external system contract so reconcile
behavior can be tested without a running Jenkins.

Key Features:
- In-memory item state keyed by external name
- Call counters per operation
- Error injection (one-shot or persistent) for failure scenarios
- Optional blocking hook to hold a call open (concurrency tests)

Usage:
    from jenkins_mock import MockJenkins

    jenkins = MockJenkins()
    reconciler = Reconciler(store, jenkins, EventRecorder(), config)
    await reconciler.reconcile("ns1/demo")

    assert jenkins.call_count("create") == 1
    assert jenkins.exists("ns1/demo")
"""

from .server import MockJenkins, MockJenkinsItem

__all__ = [
    "MockJenkins",
    "MockJenkinsItem",
]
