"""Extract standalone Mach-O images from a dyld_shared_cache"""

__version__ = "1.0.0"
__author__ = "Data Theorem"
