"""
Test doubles and response builders.
"""


def envelope(rows: list[list[str]], blank: bool = False) -> str:
    """Positional-field envelope as produced by a generated TDL report."""
    parts = ["<ENVELOPE>"]
    for row in rows:
        if blank:
            parts.append("<FLDBLANK></FLDBLANK>")
        for i, value in enumerate(row, start=1):
            parts.append(f"<F{i:02d}>{value}</F{i:02d}>")
    parts.append("</ENVELOPE>")
    return "\n".join(parts)


class FakeTally:
    """
    Stand-in for TallyClient.

    ``responses`` maps a marker substring of the request XML to the reply
    (or an exception to raise). The first matching marker wins.
    """

    def __init__(self, responses=None, cursor='"5","9"'):
        self.responses = responses or {}
        self.cursor = cursor
        self.requests = []
        self.closed = False

    def post_xml(self, xml, timeout=None):
        self.requests.append(xml)
        if "MyReportAlterID" in xml:
            reply = self.cursor
        else:
            reply = next(
                (value for marker, value in self.responses.items() if marker in xml),
                "<ENVELOPE></ENVELOPE>",
            )
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def data_requests(self):
        return [r for r in self.requests if "MyReportAlterID" not in r]

    def test_connection(self):
        return {"status": "connected", "companies": ["Acme Traders"]}

    def close(self):
        self.closed = True


