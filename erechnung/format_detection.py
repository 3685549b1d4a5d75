"""
Format-Erkennung für E-Rechnungs-XML (CII vs. UBL).
"""

import re
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Namespaces für CII (Cross Industry Invoice) - ZUGFeRD/Factur-X/XRechnung
CII_NAMESPACES = {
    'rsm': 'urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100',
    'ram': 'urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100',
    'udt': 'urn:un:unece:uncefact:data:standard:UnqualifiedDataType:100',
    'qdt': 'urn:un:unece:uncefact:data:standard:QualifiedDataType:100',
}

# Namespaces für UBL (Universal Business Language) - XRechnung UBL
UBL_NAMESPACES = {
    'ubl': 'urn:oasis:names:specification:ubl:schema:xsd:Invoice-2',
    'cn': 'urn:oasis:names:specification:ubl:schema:xsd:CreditNote-2',
    'cac': 'urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2',
    'cbc': 'urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2',
}

XRECHNUNG_VERSION = re.compile(r'xrechnung_(\d+\.\d+(?:\.\d+)?)', re.IGNORECASE)


class Flavor(str, Enum):
    CII = "CII"
    UBL = "UBL"
    UNKNOWN = "Unknown"


@dataclass
class FlavorResult:
    flavor: Flavor
    version: Optional[str] = None


def split_tag(tag: str):
    """'{uri}Local' -> (uri, 'Local')"""
    if tag.startswith('{'):
        uri, _, local = tag[1:].partition('}')
        return uri, local
    return '', tag


def detect_flavor(xml: Union[str, bytes, ET.Element]) -> FlavorResult:
    """
    Klassifiziert ein XML-Dokument anhand von Root-Element und Namespace.

    Wirft nie; nicht lesbares oder fremdes XML ergibt ``Flavor.UNKNOWN``.
    """
    if isinstance(xml, ET.Element):
        root = xml
    else:
        try:
            root = ET.fromstring(xml)
        except ET.ParseError as e:
            logger.debug(f"Format-Erkennung: XML nicht lesbar ({e})")
            return FlavorResult(Flavor.UNKNOWN)

    uri, local = split_tag(root.tag)

    if local == 'CrossIndustryInvoice' and uri == CII_NAMESPACES['rsm']:
        guideline = root.find(
            'rsm:ExchangedDocumentContext/ram:GuidelineSpecifiedDocumentContextParameter/ram:ID',
            CII_NAMESPACES,
        )
        return FlavorResult(Flavor.CII, _xrechnung_version(guideline))

    if local in ('Invoice', 'CreditNote') and uri in (UBL_NAMESPACES['ubl'], UBL_NAMESPACES['cn']):
        version = _xrechnung_version(root.find('cbc:CustomizationID', UBL_NAMESPACES))
        if version is None:
            ubl_version = root.find('cbc:UBLVersionID', UBL_NAMESPACES)
            if ubl_version is not None and ubl_version.text:
                version = ubl_version.text.strip()
        return FlavorResult(Flavor.UBL, version)

    return FlavorResult(Flavor.UNKNOWN)


def detect_xml_format(xml_content: str) -> Flavor:
    """Schnelle Textprüfung ohne XML-Parsing"""
    if CII_NAMESPACES['rsm'] in xml_content or 'CrossIndustryInvoice' in xml_content:
        return Flavor.CII
    if '<Invoice' in xml_content or ':Invoice' in xml_content:
        if ('urn:oasis:names:specification:ubl' in xml_content
                or 'xmlns:cbc' in xml_content or 'xmlns:cac' in xml_content):
            return Flavor.UBL
    return Flavor.UNKNOWN


def _xrechnung_version(element: Optional[ET.Element]) -> Optional[str]:
    if element is None or not element.text:
        return None
    match = XRECHNUNG_VERSION.search(element.text)
    return match.group(1) if match else None
