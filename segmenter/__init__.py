"""Live speech segmentation with voice activity detection and speaker attribution."""
