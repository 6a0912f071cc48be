"""Convert AW3D30 elevation tiles to Parquet, region by region

Kept free of heavy imports: raster reader processes import this package.
"""

__version__ = "0.3.0"
