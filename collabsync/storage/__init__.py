"""Local and remote memory stores."""
