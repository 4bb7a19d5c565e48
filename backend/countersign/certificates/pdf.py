"""
PDF rendering of the certificate of completion.

The canvas runs in reportlab's invariant mode and every string drawn comes
from the certificate data, so equal data renders to byte-equal PDFs.
"""

from io import BytesIO

from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

MARGIN = 50
PAGE_WIDTH, PAGE_HEIGHT = A4
TEXT_WIDTH = PAGE_WIDTH - 2 * MARGIN

TITLE = "Certificate of Completion"
SUBTITLE = "Countersign Electronic Signature Service"
FOOTER = "This certificate is digitally generated and does not require a physical signature."


class _Writer:
    def __init__(self, c: canvas.Canvas):
        self.c = c
        self.y = PAGE_HEIGHT - MARGIN

    def _ensure(self, height: float) -> None:
        if self.y - height < MARGIN + 20:
            self.c.showPage()
            self.y = PAGE_HEIGHT - MARGIN

    def heading(self, text: str) -> None:
        self._ensure(40)
        self.y -= 12
        self.c.setFont("Helvetica-Bold", 13)
        self.c.setFillColorRGB(0.12, 0.16, 0.22)
        self.c.drawString(MARGIN, self.y, text)
        self.y -= 20

    def line(self, text: str, indent: float = 20, size: int = 10, font: str = "Helvetica") -> None:
        self.c.setFont(font, size)
        self.c.setFillColorRGB(0.22, 0.25, 0.32)
        for part in simpleSplit(text, font, size, TEXT_WIDTH - indent) or [""]:
            self._ensure(size + 4)
            self.c.drawString(MARGIN + indent, self.y, part)
            self.y -= size + 4


def _value(value) -> str:
    return "-" if value is None or value == "" else str(value)


def render_certificate_pdf(data: dict) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4, invariant=1)
    envelope = data["envelope"]
    c.setTitle(TITLE)
    c.setAuthor("Countersign")
    c.setSubject(f"Certificate for envelope: {envelope['title']}")
    c.setCreator(SUBTITLE)

    w = _Writer(c)

    # Header
    c.setFont("Helvetica-Bold", 22)
    c.setFillColorRGB(0.12, 0.16, 0.22)
    c.drawCentredString(PAGE_WIDTH / 2, w.y - 10, TITLE)
    c.setFont("Helvetica", 13)
    c.setFillColorRGB(0.42, 0.45, 0.5)
    c.drawCentredString(PAGE_WIDTH / 2, w.y - 32, SUBTITLE)
    w.y -= 60

    w.heading("Envelope Information")
    w.line(f"Title: {envelope['title']}")
    w.line(f"ID: {envelope['id']}")
    w.line(f"Subject: {_value(envelope.get('subject'))}")
    w.line(f"Sent: {_value(envelope.get('sentAt'))}")
    w.line(f"Completed: {_value(envelope.get('completedAt'))}")

    sender = data["sender"]
    w.heading("Sender")
    w.line(f"Name: {sender['name']}")
    w.line(f"Email: {sender['email']}")

    w.heading("Recipients & Signatures")
    for index, recipient in enumerate(data["recipients"], start=1):
        w.line(f"{index}. {recipient['name']} ({recipient['email']})", font="Helvetica-Bold")
        w.line(
            f"Role: {recipient['role']} | Order: {recipient['routingOrder']} | Status: {recipient['status']}",
            indent=34,
        )
        w.line(f"Viewed: {_value(recipient.get('viewedAt'))} | Signed: {_value(recipient.get('signedAt'))}", indent=34)
        if recipient.get("signedIp"):
            w.line(f"IP address: {recipient['signedIp']}", indent=34)
        for field in recipient["fields"]:
            w.line(
                f"{field['type']} on page {field['page']}: {_value(field.get('value'))} "
                f"(signed {_value(field.get('signedAt'))})",
                indent=48,
                size=9,
            )

    w.heading("Documents")
    for index, document in enumerate(data["documents"], start=1):
        w.line(f"{index}. {document['name']} ({document['pages']} pages, {document['fileSize']} bytes)")
        w.line(f"SHA-256: {document['sha256']}", indent=34, size=8, font="Courier")

    security = data["security"]
    integrity = security["integrity"]
    compliance = data["compliance"]
    w.heading("Security & Compliance")
    w.line(f"Required fields signed: {integrity['totalSigned']} of {integrity['totalRequired']}")
    w.line(f"Documents: {integrity['documentCount']} | Recipients: {integrity['recipientCount']}")
    for evidence in security["evidences"]:
        w.line(
            f"Evidence {evidence['sequence']} by {evidence['recipient']['email']} via {_value(evidence['provider'])}"
            f" (timestamp token: {'yes' if evidence['tsaPresent'] else 'no'})",
            indent=34,
            size=9,
        )
    w.line(f"Electronic Signature Act: {compliance['electronicSignatureAct']}")
    w.line(f"Time-Stamp Authority: {compliance['timeStampAuthority']}")
    w.line(f"Document Integrity: {compliance['documentIntegrity']}")
    w.line(f"Encryption: {compliance['encryptionStandard']}")

    trail = data["auditTrail"]
    w.y -= 12
    w.line(f"Certificate ID: {data['certificateId']}", indent=0, size=9)
    w.line(f"Generated: {security['generatedAt']}", indent=0, size=9)
    w.line(f"Audit events: {len(trail)}", indent=0, size=9)
    if trail:
        w.line(f"Audit chain head: {trail[-1]['eventHash']}", indent=0, size=8, font="Courier")

    # Footer
    c.setFont("Helvetica", 8)
    c.setFillColorRGB(0.61, 0.64, 0.69)
    c.drawCentredString(PAGE_WIDTH / 2, MARGIN - 10, FOOTER)

    c.showPage()
    c.save()
    return buf.getvalue()
