"""
Compliance Workflows

Versioned workflow templates and an instance lifecycle engine for
compliance entities (cases, investigations, disclosures, policies and
campaigns): legal transitions, gates, SLA tracking and fork-on-write
template versioning.
"""

__version__ = "1.0.0"
