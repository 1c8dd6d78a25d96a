"""Outbound protocol translators."""

from .base_translator import ProtocolTranslator
from .odata_translator import ODataTranslator
from .soap_translator import SoapTranslator

__all__ = ["ODataTranslator", "ProtocolTranslator", "SoapTranslator"]
