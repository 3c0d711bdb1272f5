"""Logging setup for physiocorr workflows."""
import logging
import os

LGR = logging.getLogger("GENERAL")
TimingLGR = logging.getLogger("TIMING")
MemoryLGR = logging.getLogger("MEMORY")

LOGSUFFIXES = {
    "GENERAL": "_log.txt",
    "TIMING": "_runtimings.tsv",
    "MEMORY": "_memusage.tsv",
}


class ContextFilter(logging.Filter):
    """Keep the timing and memory records out of the general log and the console."""

    NAMES = {"TIMING", "MEMORY"}

    def filter(self, record):
        return not any([n in record.name for n in self.NAMES])


class TimingFormatter(logging.Formatter):
    """A formatter with two optional extra fields, message2 and message3.

    The fields are passed as a dictionary, without a keyword:
    ``TimingLGR.info("Run done", {"message2": 200, "message3": "frames"})``.
    """

    def format(self, record):
        if isinstance(record.args, dict):
            record.message2 = record.args.get("message2", None)
            record.message3 = record.args.get("message3", None)
        else:
            record.message2 = None
            record.message3 = None
        return super().format(record)


def _filehandler(filename, formatter, contextfilter=False):
    thehandler = logging.FileHandler(filename)
    thehandler.setFormatter(formatter)
    if contextfilter:
        thehandler.addFilter(ContextFilter())
    return thehandler


def setup_logger(outputname, debug=False):
    """Set up the general, timing and memory loggers for a workflow.

    Parameters
    ----------
    outputname : str
        Path prefix of the log files: ``<outputname>_log.txt`` (general messages,
        which also go to the console), ``<outputname>_runtimings.tsv`` and
        ``<outputname>_memusage.tsv``.  Files left over from an earlier run are
        removed.
    debug : bool, optional
        Log general messages at DEBUG rather than INFO level. Default is False.

    Returns
    -------
    dict
        Logger name to log file name.
    """
    thefilenames = {thename: outputname + thesuffix for thename, thesuffix in LOGSUFFIXES.items()}
    for fname in thefilenames.values():
        if os.path.isfile(fname):
            LGR.info(f"Removing existing file: {fname}")
            os.remove(fname)

    LGR.setLevel(logging.DEBUG if debug else logging.INFO)
    plainformatter = logging.Formatter("%(message)s")
    LGR.addHandler(_filehandler(thefilenames["GENERAL"], plainformatter, contextfilter=True))
    consolehandler = logging.StreamHandler()
    consolehandler.setFormatter(plainformatter)
    consolehandler.addFilter(ContextFilter())
    LGR.addHandler(consolehandler)
    LGR.propagate = False

    TimingLGR.setLevel(logging.INFO)
    TimingLGR.addHandler(
        _filehandler(
            thefilenames["TIMING"],
            TimingFormatter(
                "%(asctime)s.%(msecs)03d\t%(message)s\t%(message2)s\t%(message3)s",
                datefmt="%Y%m%dT%H%M%S",
            ),
        )
    )
    TimingLGR.propagate = False

    MemoryLGR.setLevel(logging.INFO)
    MemoryLGR.addHandler(_filehandler(thefilenames["MEMORY"], plainformatter))
    MemoryLGR.propagate = False
    return thefilenames


def shutdown_loggers():
    """Close and remove every handler that ``setup_logger`` attached."""
    for thelogger in [LGR, TimingLGR, MemoryLGR]:
        for handler in thelogger.handlers[:]:
            thelogger.removeHandler(handler)
            handler.close()
