"""KPI module -- pharmaceutical BI engine and salesman performance metrics."""
