"""HTTP entry point for schedulers and operators."""
