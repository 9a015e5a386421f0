"""Generate GitHub Actions runner JIT tokens for Caliptra FPGA runners."""

__version__ = "0.1.0"
