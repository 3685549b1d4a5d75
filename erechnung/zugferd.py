#!/usr/bin/env python3
"""
SBS Deutschland – ZUGFeRD/Factur-X Container
Liest und schreibt das eingebettete Rechnungs-XML einer PDF/A-3.
"""

import io
import logging
from typing import Dict, List, Optional, Tuple

import pikepdf

from .exceptions import PdfExtractionError

logger = logging.getLogger(__name__)

# Dateinamen nach ZUGFeRD 2.x / Factur-X / XRechnung-Konvention
ZUGFERD_XML_FILENAMES = ("factur-x.xml", "zugferd-invoice.xml", "xrechnung.xml")

PDF_MAGIC = b"%PDF-"


def _open_pdf(pdf_bytes: bytes) -> pikepdf.Pdf:
    if not pdf_bytes or PDF_MAGIC not in bytes(pdf_bytes[:1024]):
        raise PdfExtractionError("Datei ist kein PDF", {"size": len(pdf_bytes or b"")})
    try:
        return pikepdf.open(io.BytesIO(pdf_bytes))
    except pikepdf.PdfError as e:
        raise PdfExtractionError(f"PDF konnte nicht geöffnet werden: {e}") from e


def _collect_name_tree(node, out: List[Tuple[str, pikepdf.Object]]):
    """Sammelt (Name, Filespec)-Paare aus einem Name Tree inkl. /Kids"""
    if "/Names" in node:
        names = list(node["/Names"])
        for i in range(0, len(names) - 1, 2):
            out.append((str(names[i]), names[i + 1]))
    if "/Kids" in node:
        for kid in node["/Kids"]:
            _collect_name_tree(kid, out)


def list_attachments(pdf: pikepdf.Pdf) -> Dict[str, bytes]:
    """Alle eingebetteten Dateien als {Dateiname: Inhalt}"""
    entries: List[Tuple[str, pikepdf.Object]] = []
    if "/Names" in pdf.Root and "/EmbeddedFiles" in pdf.Root["/Names"]:
        _collect_name_tree(pdf.Root["/Names"]["/EmbeddedFiles"], entries)

    files: Dict[str, bytes] = {}
    for filename, filespec in entries:
        if "/EF" in filespec and "/F" in filespec["/EF"]:
            stream = filespec["/EF"]["/F"]
            files[filename] = bytes(stream.read_bytes())
    return files


def extract_embedded_xml(pdf_bytes: bytes) -> bytes:
    """
    Extrahiert eingebettetes XML aus ZUGFeRD/Factur-X PDF.

    Raises:
        PdfExtractionError: kein PDF oder kein Rechnungs-XML enthalten
    """
    pdf = _open_pdf(pdf_bytes)
    try:
        files = list_attachments(pdf)
    finally:
        pdf.close()

    for filename, content in files.items():
        if filename.lower() in ZUGFERD_XML_FILENAMES:
            logger.debug(f"Eingebettetes Rechnungs-XML gefunden: {filename}")
            return content

    # Fallback: erste XML-Datei
    for filename, content in files.items():
        if filename.lower().endswith(".xml"):
            logger.info(f"Kein Standard-Dateiname, nutze XML-Anhang: {filename}")
            return content

    raise PdfExtractionError(
        "Kein ZUGFeRD/Factur-X XML im PDF gefunden",
        {"attachments": sorted(files), "expected": list(ZUGFERD_XML_FILENAMES)},
    )


def is_zugferd_pdf(pdf_bytes: bytes) -> bool:
    """Quick-Check ohne Exception"""
    try:
        xml = extract_embedded_xml(pdf_bytes)
    except PdfExtractionError:
        return False
    text = xml.decode("utf-8", errors="ignore")
    return "CrossIndustryInvoice" in text or "zugferd" in text.lower() or "factur-x" in text.lower()


def embed_xml_in_pdf(pdf_bytes: Optional[bytes], xml_bytes: bytes, filename: str = "factur-x.xml") -> bytes:
    """
    Bettet Rechnungs-XML als Associated File (/AFRelationship /Data) ein.

    Ohne ``pdf_bytes`` wird ein leeres einseitiges PDF erzeugt.
    """
    if pdf_bytes:
        pdf = _open_pdf(pdf_bytes)
    else:
        pdf = pikepdf.new()
        pdf.add_blank_page()

    try:
        xml_stream = pikepdf.Stream(pdf, xml_bytes)
        xml_stream.stream_dict["/Type"] = pikepdf.Name("/EmbeddedFile")
        xml_stream.stream_dict["/Subtype"] = pikepdf.Name("/text/xml")

        filespec = pdf.make_indirect(pikepdf.Dictionary({
            "/Type": pikepdf.Name("/Filespec"),
            "/F": filename,
            "/UF": filename,
            "/Desc": "Factur-X/ZUGFeRD Invoice Data",
            "/AFRelationship": pikepdf.Name("/Data"),
            "/EF": pikepdf.Dictionary({
                "/F": xml_stream,
                "/UF": xml_stream
            })
        }))

        if "/Names" not in pdf.Root:
            pdf.Root["/Names"] = pikepdf.Dictionary()

        pdf.Root["/Names"]["/EmbeddedFiles"] = pikepdf.Dictionary({
            "/Names": pikepdf.Array([pikepdf.String(filename), filespec])
        })

        if "/AF" not in pdf.Root:
            pdf.Root["/AF"] = pikepdf.Array()
        pdf.Root["/AF"].append(filespec)

        out = io.BytesIO()
        pdf.save(out)
    finally:
        pdf.close()

    logger.info(f"ZUGFeRD-PDF erstellt ({filename}, {len(xml_bytes)} Bytes XML)")
    return out.getvalue()
