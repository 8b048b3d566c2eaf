"""
tender-boq — Bill of Quantities extraction from tender documents

Loads tender documents (PDF, XLSX, CSV), has a language model extract the
Bill of Quantities as structured JSON, stores the result and routes it
through a human review workflow with an audit trail.
"""

__version__ = "1.0.0"
