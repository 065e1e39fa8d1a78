"""EVM chain access: event ABIs and the log source."""
