"""
Report Exports

Background export pipeline: job validation and state transitions, a bounded
priority queue that renders reports, integrity-checked file storage and a
scheduled retention sweep. ``report_exports.service.ExportService`` wires the
pieces together.
"""

__version__ = "1.0.0"
