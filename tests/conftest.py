"""Test configuration: import path and audit log.

Tests run with no process-wide audit log so nothing is written to the
working directory. Audit-specific tests install their own in a temp dir
and remove it again.
"""

import os
import sys

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.audit_log import configure_audit_log

configure_audit_log(None)
