"""HVAC report execution engine."""
