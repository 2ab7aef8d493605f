"""HTTP surface for the activation engine."""
