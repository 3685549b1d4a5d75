"""
SBS Deutschland – E-Rechnung Engine
Import, Prüfung und Export von E-Rechnungen (ZUGFeRD, XRechnung, DATEV).
"""

__version__ = "1.0.0"
