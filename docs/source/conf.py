# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import os
import sys
from datetime import datetime

# Make the repo root importable so autodoc can import gompertz_clone
sys.path.insert(0, os.path.abspath("../.."))

# -- Project information -----------------------------------------------------

project = "gompertz_clone"
author = "Agentschap Plantentuin Meise"
copyright = f"{datetime.now().year}, {author}"
release = "1.0.0"

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
]

autodoc_mock_imports = ["pymc", "pytensor", "arviz"]

templates_path = ["_templates"]
exclude_patterns = []

# -- Options for HTML output -------------------------------------------------

html_theme = "alabaster"
html_static_path = ["_static"]
