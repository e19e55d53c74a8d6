"""Sheet number/title extraction for drawing-set PDFs."""
