"""
jobagent: a per-job execution agent and the job registry it reports to.
"""

__version__ = "0.1.0"
