"""Pre-processing: mesh, materials, heat sources and deposition planning."""
