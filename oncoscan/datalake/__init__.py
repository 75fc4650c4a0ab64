"""Model artifact download and prediction record persistence."""
