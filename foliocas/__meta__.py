# -*- coding: utf-8 -*-
"""Define project metadata
"""

__title__ = "foliocas"
__summary__ = "Versioned per-account folders on top of a content-addressed store."
__url__ = "https://github.com/weedonandscott/foliocas"

__version__ = "0.1.0"

__install_requires__ = ["anyio", "blake3", "python-json-logger"]
__tests_require__ = ["tox", "pytest"]

__author__ = "Weedon & Scott Studios"
__email__ = "Studios@WeedonAndScott.com"

__license__ = "MIT License"
