"""Build Factory -- declarative generation and deployment of tenant software packages.

Turns a wizard configuration into a branded, feature-trimmed archive built
from versioned product templates, and deploys it to GitHub + Render.
"""

__version__ = "1.0.0"
