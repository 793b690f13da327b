# Produces the finalized artifact: the original document followed by a
# certificate-of-completion page listing the request and who signed it.

from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import List, Optional

from pypdf import PdfReader, PdfWriter
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

PDF_MAGIC = b"%PDF"
MARGIN = 72
LINE = 14


@dataclass
class SignatureLine:
    name: str
    email: str
    position: Optional[int]
    signed_at: Optional[datetime]
    ip: Optional[str]


@dataclass
class Certificate:
    request_id: str
    title: str
    mode: str
    sha256_original: str
    sealed_at: datetime
    signatures: List[SignatureLine] = field(default_factory=list)


def _stamp(moment: Optional[datetime]) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC") if moment else "-"


def build_certificate(request, signers, sealed_at: datetime, sha_original: str) -> Certificate:
    return Certificate(
        request_id=request.id,
        title=request.title,
        mode=request.mode.value,
        sha256_original=sha_original,
        sealed_at=sealed_at,
        signatures=[SignatureLine(s.name, s.email, s.position, s.signed_at, s.signed_ip) for s in signers],
    )


def render_certificate(cert: Certificate) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    _, height = letter
    y = height - MARGIN

    def line(text: str, font: str = "Helvetica", size: int = 10, indent: int = 0):
        nonlocal y
        if y < MARGIN:
            c.showPage()
            y = height - MARGIN
        c.setFont(font, size)
        c.drawString(MARGIN + indent, y, text[:110])
        y -= LINE

    line("Certificate of Completion", "Helvetica-Bold", 14)
    y -= LINE
    line(cert.title[:90], "Helvetica-Bold", 11)
    line(f"Request {cert.request_id} ({cert.mode} signing)")
    line(f"Sealed {_stamp(cert.sealed_at)}")
    y -= LINE

    line("Signatures", "Helvetica-Bold", 11)
    for sig in cert.signatures:
        order = f"{sig.position}. " if sig.position is not None else ""
        line(f"{order}{sig.name} <{sig.email}>")
        line(f"signed {_stamp(sig.signed_at)} from {sig.ip or 'unknown address'}", size=9, indent=16)
    y -= LINE

    line("SHA-256 of the original document", "Helvetica-Bold", 9)
    line(cert.sha256_original, "Courier", 8)
    c.showPage()
    c.save()
    return buf.getvalue()


def seal(original: bytes, cert: Certificate) -> bytes:
    """Append the certificate to a PDF; non-PDF artifacts are finalized unchanged."""
    if not original.startswith(PDF_MAGIC):
        return original
    writer = PdfWriter()
    for page in PdfReader(BytesIO(original)).pages:
        writer.add_page(page)
    for page in PdfReader(BytesIO(render_certificate(cert))).pages:
        writer.add_page(page)
    out = BytesIO()
    writer.write(out)
    return out.getvalue()
