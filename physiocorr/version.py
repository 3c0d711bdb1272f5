# Version string, read by pyproject.toml: "X.Y" or "X.Y.Z"
_version_major = 1
_version_minor = 0
_version_micro = 0  # use '' for first of series, number for 1 and above
_version_extra = ''

_ver = [_version_major, _version_minor]
if _version_micro:
    _ver.append(_version_micro)
if _version_extra:
    _ver.append(_version_extra)

__version__ = '.'.join(map(str, _ver))
