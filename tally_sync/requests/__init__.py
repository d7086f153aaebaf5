"""
XML request templates for the Tally API.

Templates are Jinja2 files that render XML requests for the Tally HTTP API.
"""
from pathlib import Path

# Template directory
TEMPLATE_DIR = Path(__file__).parent

# Available templates
TEMPLATES = {
    "report": "report.xml.j2",
    "tdl_export": "tdl_export.xml.j2",
    "alter_id": "alter_id.xml.j2",
}

