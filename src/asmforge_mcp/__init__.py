"""Assembly toolchain and GDB/MI debugging services."""
