"""
docbuild - sandboxed documentation-build orchestrator.

Turns a backlog of (package, version) releases into durably stored
documentation artifacts. Builds run the external documentation tool inside
privilege-separated sandbox slots; the metadata store is the single source of
truth for what has been built and what is pending.
"""

__version__ = "0.1.0"
