"""Export module -- dashboard exports and sales report downloads."""
