"""labmap: tiered semantic resolution of lab analyte and unit labels."""

__version__ = "0.1.0"
