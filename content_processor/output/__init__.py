"""Output assembly and writers."""

from .document_writer import DocumentWriter, join_document, unescape_separator

__all__ = ["DocumentWriter", "join_document", "unescape_separator"]
