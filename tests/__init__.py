"""Document approval workflow test suite."""
