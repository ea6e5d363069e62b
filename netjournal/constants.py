"""Sets global version values"""

import platform

__version__ = "1.0.0"

USER_AGENT = "Mozilla/5.0 ({0} {1}) netjournal/{2}".format(
    platform.system(), platform.release(), __version__
)

SERVER_HEADER = "netjournal/{0}".format(__version__)
