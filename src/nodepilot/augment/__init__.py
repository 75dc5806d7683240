"""Pre-run instruction augmentation."""
