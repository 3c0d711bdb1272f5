from .version import __version__  # noqa
from .fit import correctfmri
from .io import loadfmri
from .locate import locateruns

del (correctfmri, loadfmri, locateruns)
