"""Site Kit Auth.

Authentication and credential management for connecting a site to
Google services, either through the Site Kit registration proxy or
with directly configured OAuth client credentials.
"""

__version__ = "0.1.0"

from sitekit_auth.config import Config, ConfigError, load_config

__all__ = [
    "Config",
    "ConfigError",
    "__version__",
    "load_config",
]
