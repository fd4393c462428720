"""Analysis Ops - Analysis Operation Lifecycle Engine

Tracks purchased multi-part analysis jobs through their lifecycle, re-drives
failed jobs from a durable retry queue and escalates to an operator when
recovery is not possible.
"""

__version__ = "0.1.0"
