# bsec_exporter/engine/classifier.py
"""
Classification of BSEC return codes.

BSEC returns 0 on success, a positive value for warnings/informational
results (outputs are still valid) and a negative value for errors. Which
errors leave the library in a usable state is not fully documented, so the
table below is only a default: deployments can move codes between the
recoverable and fatal sets through the config file.
"""
from __future__ import annotations
import enum
import logging
from typing import Dict, Iterable, Mapping

logger = logging.getLogger(__name__)


class Severity(str, enum.Enum):
    OK = "ok"
    WARNING = "warning"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


BSEC_CODE_NAMES: Dict[int, str] = {
    0: "BSEC_OK",
    -1: "BSEC_E_DOSTEPS_INVALIDINPUT",
    -2: "BSEC_E_DOSTEPS_VALUELIMITS",
    -6: "BSEC_E_DOSTEPS_DUPLICATEINPUT",
    2: "BSEC_I_DOSTEPS_NOOUTPUTSRETURNABLE",
    3: "BSEC_W_DOSTEPS_EXCESSOUTPUTS",
    4: "BSEC_W_DOSTEPS_TSINTRADIFFOUTOFRANGE",
    -10: "BSEC_E_SU_WRONGDATARATE",
    -12: "BSEC_E_SU_SAMPLERATELIMITS",
    -13: "BSEC_E_SU_DUPLICATEGATE",
    -14: "BSEC_E_SU_INVALIDSAMPLERATE",
    -15: "BSEC_E_SU_GATECOUNTEXCEEDSARRAY",
    -16: "BSEC_E_SU_SAMPLINTVLINTEGERMULT",
    -17: "BSEC_E_SU_MULTGASSAMPLINTVL",
    -18: "BSEC_E_SU_HIGHHEATERONDURATION",
    10: "BSEC_W_SU_UNKNOWNOUTPUTGATE",
    11: "BSEC_W_SU_MODINNOULP",
    12: "BSEC_I_SU_SUBSCRIBEDOUTPUTGATES",
    -32: "BSEC_E_PARSE_SECTIONEXCEEDSWORKBUFFER",
    -33: "BSEC_E_CONFIG_FAIL",
    -34: "BSEC_E_CONFIG_VERSIONMISMATCH",
    -35: "BSEC_E_CONFIG_FEATUREMISMATCH",
    -36: "BSEC_E_CONFIG_CRCMISMATCH",
    -37: "BSEC_E_CONFIG_EMPTY",
    -38: "BSEC_E_CONFIG_INSUFFICIENTWORKBUFFER",
    -40: "BSEC_E_CONFIG_INVALIDSTRINGSIZE",
    -41: "BSEC_E_CONFIG_INSUFFICIENTBUFFER",
    -100: "BSEC_E_SET_INVALIDCHANNELIDENTIFIER",
    -104: "BSEC_E_SET_INVALIDLENGTH",
    100: "BSEC_W_SC_CALL_TIMING_VIOLATION",
    101: "BSEC_W_SC_MODEXCEEDULPTIMELIMIT",
    102: "BSEC_W_SC_MODINSUFFICIENTWAITTIME",
}

# Input validation failures of a single bsec_do_steps() call: the sample is
# dropped, the library state is untouched.
DEFAULT_RECOVERABLE_CODES = frozenset({-1, -2, -6})


class ErrorClassifier:
    """Maps engine return codes to a Severity."""

    def __init__(
        self,
        recoverable: Iterable[int] = DEFAULT_RECOVERABLE_CODES,
        fatal: Iterable[int] = (),
    ) -> None:
        self._overrides: Dict[int, Severity] = {}
        for code in recoverable:
            self._overrides[int(code)] = Severity.RECOVERABLE
        # fatal wins if a code is listed twice
        for code in fatal:
            self._overrides[int(code)] = Severity.FATAL

    @classmethod
    def with_overrides(
        cls, recoverable: Iterable[int] = (), fatal: Iterable[int] = ()
    ) -> "ErrorClassifier":
        """Default table extended by configured codes."""
        return cls(recoverable=set(DEFAULT_RECOVERABLE_CODES) | set(recoverable), fatal=fatal)

    @property
    def overrides(self) -> Mapping[int, Severity]:
        return dict(self._overrides)

    def classify(self, code: int) -> Severity:
        if code in self._overrides:
            return self._overrides[code]
        if code == 0:
            return Severity.OK
        if code > 0:
            return Severity.WARNING
        return Severity.FATAL

    def is_fatal(self, code: int) -> bool:
        return self.classify(code) is Severity.FATAL


def code_name(code: int) -> str:
    return BSEC_CODE_NAMES.get(code, f"BSEC_UNKNOWN({code})")
