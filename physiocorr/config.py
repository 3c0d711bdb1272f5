#!/usr/bin/env python
# -*- coding: utf-8 -*-
#
#   Copyright 2024-2025 physiocorr developers
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.
#
#
"""
Configuration for physiological regressor estimation.

The parameter tree handed to the regressor estimation tool is a set of frozen
dataclasses.  Values are changed only by building a new configuration, either
with ``applyoverrides`` (dotted key paths such as ``model.retroicor.order.c``,
checked against the known fields and converted to the type each field
declares) or with ``forrun``, which derives the configuration for one run from
the base configuration.
"""
import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Iterable,
    Literal,
    Mapping,
    Optional,
    Tuple,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

import physiocorr.io as pc_io

LGR = logging.getLogger("GENERAL")

TRUE_STRINGS = ("yes", "true", "1", "on")
FALSE_STRINGS = ("no", "false", "0", "off")

DEFAULT_OUTPUT_MULTIPLE_REGRESSORS = "multiple_regressors.txt"
DEFAULT_OUTPUT_PHYSIO = "physio.mat"


class ConfigurationError(ValueError):
    """An override names an unknown field or has a value of the wrong type."""


# ---------------------------------------- log files and timing ---------------------------------
@dataclass(frozen=True)
class LogFilesConfig:
    vendor: str = "Philips"
    cardiac: Optional[str] = None
    respiration: Optional[str] = None
    cardiac_respiration: Optional[str] = None
    relative_start_acquisition: float = 0.0
    align_scan: Literal["first", "last"] = "last"


@dataclass(frozen=True)
class SqparConfig:
    Nslices: Optional[int] = None
    TR: Optional[float] = None
    Ndummies: Optional[int] = None
    Nscans: Optional[int] = None
    onset_slice: Optional[int] = None


@dataclass(frozen=True)
class SyncConfig:
    method: Literal["nominal", "gradient_log", "gradient_log_auto", "scan_timing_log"] = "nominal"


@dataclass(frozen=True)
class ScanTimingConfig:
    sqpar: SqparConfig = field(default_factory=SqparConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


# ---------------------------------------- preprocessing ----------------------------------------
@dataclass(frozen=True)
class CardiacFilterConfig:
    include: bool = False
    type: Literal["butter", "cheby2"] = "butter"
    passband: Tuple[float, float] = (0.3, 9.0)


@dataclass(frozen=True)
class InitialCpulseSelectConfig:
    method: Literal["auto_matched", "auto_template", "load_from_logfile", "manual", "load"] = (
        "auto_matched"
    )
    max_heart_rate_bpm: float = 90.0
    file: str = "initial_cpulse_kRpeakfile.mat"
    min: float = 0.4


@dataclass(frozen=True)
class PosthocCpulseSelectConfig:
    method: Literal["off", "manual", "load"] = "off"
    percentile: float = 80.0
    upper_thresh: float = 60.0
    lower_thresh: float = 60.0


@dataclass(frozen=True)
class CardiacPreprocConfig:
    modality: Literal["ECG", "ECG_raw", "ECG_WiFi", "PPU", "PPU_WiFi", "OXY"] = "ECG"
    filter: CardiacFilterConfig = field(default_factory=CardiacFilterConfig)
    initial_cpulse_select: InitialCpulseSelectConfig = field(
        default_factory=InitialCpulseSelectConfig
    )
    posthoc_cpulse_select: PosthocCpulseSelectConfig = field(
        default_factory=PosthocCpulseSelectConfig
    )


@dataclass(frozen=True)
class PreprocConfig:
    cardiac: CardiacPreprocConfig = field(default_factory=CardiacPreprocConfig)


# ---------------------------------------- noise model ------------------------------------------
@dataclass(frozen=True)
class RetroicorOrderConfig:
    c: int = 3
    r: int = 4
    cr: int = 1


@dataclass(frozen=True)
class RetroicorConfig:
    include: bool = True
    order: RetroicorOrderConfig = field(default_factory=RetroicorOrderConfig)


@dataclass(frozen=True)
class DelayedRegressorConfig:
    include: bool = False
    delays: Tuple[float, ...] = (0.0,)


@dataclass(frozen=True)
class NoiseRoisConfig:
    include: bool = False
    thresholds: float = 0.9
    n_voxel_crop: int = 0
    n_components: int = 1
    force_coregister: bool = True


@dataclass(frozen=True)
class MovementConfig:
    include: bool = False
    order: int = 6
    censoring_threshold: float = 0.5
    censoring_method: Literal["none", "FD", "DVARS", "MAXVAL"] = "FD"


@dataclass(frozen=True)
class OtherConfig:
    include: bool = False


@dataclass(frozen=True)
class ModelConfig:
    orthogonalise: Literal["none", "cardiac", "resp", "mult", "RVT", "HRV", "all"] = "none"
    censor_unreliable_recording_intervals: bool = False
    output_multiple_regressors: str = DEFAULT_OUTPUT_MULTIPLE_REGRESSORS
    output_physio: str = DEFAULT_OUTPUT_PHYSIO
    retroicor: RetroicorConfig = field(default_factory=RetroicorConfig)
    rvt: DelayedRegressorConfig = field(default_factory=DelayedRegressorConfig)
    hrv: DelayedRegressorConfig = field(default_factory=DelayedRegressorConfig)
    noise_rois: NoiseRoisConfig = field(default_factory=NoiseRoisConfig)
    movement: MovementConfig = field(default_factory=MovementConfig)
    other: OtherConfig = field(default_factory=OtherConfig)


# ---------------------------------------- output -----------------------------------------------
@dataclass(frozen=True)
class VerboseConfig:
    level: int = 2
    fig_output_file: str = "PhysIO_output.jpg"
    use_tabs: bool = False
    show_figs: bool = False
    save_figs: bool = True
    close_figs: bool = True


@dataclass(frozen=True)
class OnsSecsConfig:
    c_scaling: float = 1.0
    r_scaling: float = 1.0


@dataclass(frozen=True)
class PhysioConfig:
    """The full set of regressor estimation parameters.

    ``in_dir`` and ``fmri_file`` are the scanning root and the manual fMRI file;
    they are not used by the estimator itself.
    """

    save_dir: str = "physio_out"
    in_dir: Optional[str] = None
    fmri_file: Optional[str] = None
    log_files: LogFilesConfig = field(default_factory=LogFilesConfig)
    scan_timing: ScanTimingConfig = field(default_factory=ScanTimingConfig)
    preproc: PreprocConfig = field(default_factory=PreprocConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    verbose: VerboseConfig = field(default_factory=VerboseConfig)
    ons_secs: OnsSecsConfig = field(default_factory=OnsSecsConfig)


# fields the estimator cannot run without
REQUIRED_FOR_ESTIMATION = (
    "scan_timing.sqpar.Nslices",
    "scan_timing.sqpar.TR",
    "scan_timing.sqpar.Ndummies",
    "scan_timing.sqpar.Nscans",
    "scan_timing.sqpar.onset_slice",
)


# ---------------------------------------- schema -----------------------------------------------
def _leaftypes(thecls: type, prefix: str = "") -> Dict[str, Any]:
    thetypes = {}
    hints = get_type_hints(thecls)
    for thefield in dataclasses.fields(thecls):
        thetype = hints[thefield.name]
        thepath = prefix + thefield.name
        if dataclasses.is_dataclass(thetype):
            thetypes.update(_leaftypes(thetype, prefix=thepath + "."))
        else:
            thetypes[thepath] = thetype
    return thetypes


# dotted path -> declared type, for every settable field
FIELDS: Dict[str, Any] = _leaftypes(PhysioConfig)


def normalizekey(thekey: str) -> str:
    """Accept either '.' or '__' as the separator in a key path.

    Examples
    --------
    >>> normalizekey("model__retroicor__order__c")
    'model.retroicor.order.c'
    """
    return thekey.strip().replace("__", ".")


def coercevalue(thetype: Any, thevalue: Any, thekey: str = "") -> Any:
    """Convert a value to the type declared for a configuration field.

    Strings (as they come from the command line) are parsed; values that already
    have the right type (as they come from json) are passed through.

    Parameters
    ----------
    thetype : type
        The declared type: bool, int, float, str, Optional[...], Literal[...],
        or a Tuple of one of those.
    thevalue : Any
        The value to convert.
    thekey : str, optional
        The key path, used in error messages.

    Returns
    -------
    Any
        The converted value.

    Raises
    ------
    ConfigurationError
        If the value cannot be converted.

    Examples
    --------
    >>> coercevalue(bool, "yes")
    True
    >>> coercevalue(str, "yes")
    'yes'
    >>> coercevalue(Tuple[float, float], "0.3, 9")
    (0.3, 9.0)
    """
    origin = get_origin(thetype)
    if origin is Union:
        thesubtypes = [x for x in get_args(thetype) if x is not type(None)]
        if thevalue is None or (isinstance(thevalue, str) and thevalue.strip().lower() in ("none", "")):
            return None
        return coercevalue(thesubtypes[0], thevalue, thekey)
    if origin is Literal:
        thechoices = get_args(thetype)
        if thevalue not in thechoices:
            raise ConfigurationError(
                f"{thekey}: {thevalue!r} is not one of {', '.join(str(x) for x in thechoices)}"
            )
        return thevalue
    if origin is tuple:
        theelemtypes = get_args(thetype)
        if isinstance(thevalue, str):
            thetokens = [x for x in re.split(r"[,\s]+", thevalue.strip()) if x != ""]
        elif isinstance(thevalue, (list, tuple)):
            thetokens = list(thevalue)
        else:
            thetokens = [thevalue]
        if len(theelemtypes) == 2 and theelemtypes[1] is Ellipsis:
            theelemtypes = (theelemtypes[0],) * len(thetokens)
        if len(thetokens) != len(theelemtypes):
            raise ConfigurationError(
                f"{thekey}: expected {len(theelemtypes)} values, got {len(thetokens)} ({thevalue!r})"
            )
        return tuple(
            coercevalue(theelemtype, thetoken, thekey)
            for theelemtype, thetoken in zip(theelemtypes, thetokens)
        )
    if thetype is bool:
        if isinstance(thevalue, bool):
            return thevalue
        if isinstance(thevalue, int) and thevalue in (0, 1):
            return bool(thevalue)
        if isinstance(thevalue, str):
            if thevalue.strip().lower() in TRUE_STRINGS:
                return True
            if thevalue.strip().lower() in FALSE_STRINGS:
                return False
        raise ConfigurationError(f"{thekey}: {thevalue!r} is not a yes/no value")
    if thetype is int:
        if isinstance(thevalue, bool):
            raise ConfigurationError(f"{thekey}: {thevalue!r} is not an integer")
        try:
            thefloat = float(thevalue)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{thekey}: {thevalue!r} is not an integer")
        if not thefloat.is_integer():
            raise ConfigurationError(f"{thekey}: {thevalue!r} is not an integer")
        return int(thefloat)
    if thetype is float:
        if isinstance(thevalue, bool):
            raise ConfigurationError(f"{thekey}: {thevalue!r} is not a number")
        try:
            return float(thevalue)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{thekey}: {thevalue!r} is not a number")
    if thetype is str:
        if not isinstance(thevalue, str):
            raise ConfigurationError(f"{thekey}: {thevalue!r} is not a string")
        return thevalue
    raise ConfigurationError(f"{thekey}: unsupported field type {thetype}")


# ---------------------------------------- building configurations ------------------------------
def defaultconfig() -> PhysioConfig:
    """The default estimation parameters."""
    return PhysioConfig()


def getvalue(config: PhysioConfig, thekey: str) -> Any:
    """Look up a field by its key path."""
    thekey = normalizekey(thekey)
    if thekey not in FIELDS:
        raise ConfigurationError(f"unknown configuration field {thekey}")
    thevalue = config
    for thepart in thekey.split("."):
        thevalue = getattr(thevalue, thepart)
    return thevalue


def _replacepath(thestruct: Any, theparts: list, thevalue: Any) -> Any:
    if len(theparts) == 1:
        return dataclasses.replace(thestruct, **{theparts[0]: thevalue})
    return dataclasses.replace(
        thestruct,
        **{theparts[0]: _replacepath(getattr(thestruct, theparts[0]), theparts[1:], thevalue)},
    )


def applyoverrides(
    config: PhysioConfig,
    overrides: Union[Mapping[str, Any], Iterable[Tuple[str, Any]], None],
) -> PhysioConfig:
    """Return a copy of a configuration with some fields changed.

    Parameters
    ----------
    config : PhysioConfig
        The starting configuration.  It is not modified.
    overrides : mapping or iterable of (key, value) pairs
        Keys are dotted (or double underscore separated) field paths.  Values are
        converted to the declared type of the field.

    Returns
    -------
    PhysioConfig
        The new configuration.

    Raises
    ------
    ConfigurationError
        If a key is not a known field or a value cannot be converted.

    Examples
    --------
    >>> newconfig = applyoverrides(defaultconfig(), [("model.retroicor.order.c", "2")])
    >>> newconfig.model.retroicor.order.c
    2
    """
    if overrides is None:
        return config
    if isinstance(overrides, Mapping):
        overrides = overrides.items()
    for thekey, thevalue in overrides:
        thepath = normalizekey(thekey)
        if thepath not in FIELDS:
            raise ConfigurationError(f"unknown configuration field {thekey}")
        newvalue = coercevalue(FIELDS[thepath], thevalue, thepath)
        LGR.debug(f"setting {thepath} to {newvalue!r}")
        config = _replacepath(config, thepath.split("."), newvalue)
    return config


def flattendict(thedict: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Turn a nested dictionary into one keyed by dotted paths.

    Examples
    --------
    >>> flattendict({"model": {"retroicor": {"include": False}}})
    {'model.retroicor.include': False}
    """
    flatdict = {}
    for thekey, thevalue in thedict.items():
        thepath = prefix + normalizekey(thekey)
        if isinstance(thevalue, Mapping):
            flatdict.update(flattendict(thevalue, prefix=thepath + "."))
        else:
            flatdict[thepath] = thevalue
    return flatdict


def loadconfigfile(config: PhysioConfig, filename: str) -> PhysioConfig:
    """Overlay the (possibly partial, nested) parameters in a json file onto a configuration.

    Parameters
    ----------
    config : PhysioConfig
        The starting configuration.
    filename : str
        A json file holding a nested dictionary of parameters.

    Returns
    -------
    PhysioConfig
        The new configuration.
    """
    LGR.info(f"reading configuration from {filename}")
    return applyoverrides(config, flattendict(pc_io.readdictfromjson(filename)))


def configtodict(config: Any) -> Dict[str, Any]:
    """Convert a configuration to a nested dictionary of plain python values."""
    thedict = {}
    for thefield in dataclasses.fields(config):
        thevalue = getattr(config, thefield.name)
        if dataclasses.is_dataclass(thevalue):
            thedict[thefield.name] = configtodict(thevalue)
        elif isinstance(thevalue, tuple):
            thedict[thefield.name] = list(thevalue)
        else:
            thedict[thefield.name] = thevalue
    return thedict


def forrun(config: PhysioConfig, run: Any) -> PhysioConfig:
    """Derive the configuration for one run from the base configuration.

    The output directory, log files and scan dimensions come from the run, and
    the output file names go back to their defaults, so nothing set while
    processing one run carries over to the next.

    Parameters
    ----------
    config : PhysioConfig
        The base configuration.  It is not modified.
    run : Run
        The run being processed.

    Returns
    -------
    PhysioConfig
        A new configuration for this run.
    """
    return dataclasses.replace(
        config,
        save_dir=str(run.outputdir),
        log_files=dataclasses.replace(
            config.log_files,
            cardiac=None if run.cardiac is None else str(run.cardiac),
            respiration=None if run.respiration is None else str(run.respiration),
        ),
        scan_timing=dataclasses.replace(
            config.scan_timing,
            sqpar=dataclasses.replace(
                config.scan_timing.sqpar, Nslices=run.numslices, Nscans=run.numscans
            ),
        ),
        model=dataclasses.replace(
            config.model,
            output_multiple_regressors=DEFAULT_OUTPUT_MULTIPLE_REGRESSORS,
            output_physio=DEFAULT_OUTPUT_PHYSIO,
        ),
    )


def missingrequired(config: PhysioConfig) -> list:
    """List the fields the estimator needs that have not been set."""
    themissing = [thekey for thekey in REQUIRED_FOR_ESTIMATION if getvalue(config, thekey) is None]
    if config.log_files.cardiac is None and config.log_files.respiration is None:
        themissing.append("log_files.cardiac or log_files.respiration")
    return themissing
