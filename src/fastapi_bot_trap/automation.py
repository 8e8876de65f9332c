"""Automation-score aggregation for client-reported detection results.

The challenge page runs ``AUTOMATION_DETECTION_JS`` in the browser. The
script sums fixed weights for each signal it finds and posts
``{"automationDetected": bool, "score": float, "checks": [...]}`` to the
report endpoint. The server trusts the submitted score and only owns the
threshold and escalation contract:

* malformed reports are rejected with a 400 and change nothing;
* with detection disabled the report is acknowledged and ignored;
* otherwise the detection is logged and counted, and a score at or above the
  threshold bans the IP when auto-ban is enabled.

Signal weights used by the client:

================================  ==========
Signal                            Weight
================================  ==========
``navigator.webdriver`` set       1.0
automation globals / attributes   0.9
console timing variance (CDP)     0.7
``window.chrome`` anomalies       0.2 - 0.8
plugin array anomalies            0.3 - 0.6
================================  ==========
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from fastapi_bot_trap.ban import BanLedger, BanReason
from fastapi_bot_trap.config import BotTrapConfig
from fastapi_bot_trap.events import EventLog, EventLogEntry, EventType
from fastapi_bot_trap.metrics import MetricName, MetricsRecorder

logger = logging.getLogger(__name__)


class AutomationReport(BaseModel):
    """Detection report posted by the client-side script."""

    model_config = ConfigDict(populate_by_name=True)

    automation_detected: bool = Field(
        validation_alias=AliasChoices("automationDetected", "automation_detected", "cdp_detected"),
    )
    score: float
    checks: List[str] = Field(default_factory=list)


@dataclass
class AutomationReportResult:
    """Outcome of handling one report."""
    status_code: int
    message: str
    banned: bool = False
    report: Optional[AutomationReport] = None


class AutomationScoreAggregator:
    """Applies the server-side threshold to client automation reports."""

    def __init__(
        self,
        ledger: BanLedger,
        metrics: MetricsRecorder,
        event_log: EventLog,
    ):
        self.ledger = ledger
        self.metrics = metrics
        self.event_log = event_log

    @staticmethod
    def parse_report(body: bytes) -> Optional[AutomationReport]:
        try:
            return AutomationReport.model_validate_json(body)
        except ValidationError:
            return None

    async def handle_report(
        self, site_id: str, ip: str, body: bytes, config: BotTrapConfig
    ) -> AutomationReportResult:
        report = self.parse_report(body)
        if report is None:
            logger.debug(f"Rejected malformed automation report from {ip}")
            return AutomationReportResult(400, "Invalid automation report format")

        if not config.automation_detection_enabled:
            return AutomationReportResult(200, "Automation detection disabled", report=report)

        checks = ",".join(report.checks)
        await self.event_log.log(EventLogEntry(
            event=EventType.CHALLENGE,
            ip=ip,
            reason=f"automation_detected:score={report.score:.2f}",
            outcome=f"checks:{checks}",
        ))
        await self.metrics.increment(MetricName.AUTOMATION_DETECTIONS)

        if not (config.automation_auto_ban and report.score >= config.automation_detection_threshold):
            return AutomationReportResult(200, "Report received", report=report)

        if config.test_mode:
            await self.metrics.increment(MetricName.TEST_MODE_ACTIONS)
            await self.event_log.log(EventLogEntry(
                event=EventType.BAN,
                ip=ip,
                reason=BanReason.AUTOMATION.value,
                outcome=f"would_ban:score={report.score:.2f}",
            ))
            return AutomationReportResult(200, "TEST MODE: Would ban for automation", report=report)

        await self.ledger.ban(
            site_id, ip, BanReason.AUTOMATION, config.get_ban_duration(BanReason.AUTOMATION.value)
        )
        await self.metrics.increment(MetricName.BANS_TOTAL, BanReason.AUTOMATION.value)
        await self.metrics.increment(MetricName.AUTOMATION_AUTO_BANS)
        await self.event_log.log(EventLogEntry(
            event=EventType.BAN,
            ip=ip,
            reason=BanReason.AUTOMATION.value,
            outcome=f"banned:score={report.score:.2f}",
        ))
        return AutomationReportResult(200, "Automation detected - banned", banned=True, report=report)


AUTOMATION_DETECTION_JS = r"""
(function() {
    'use strict';

    var detectionComplete = false;
    var automationDetected = false;

    // Console calls are measurably slower and noisier while a CDP client
    // has Runtime.enable active.
    function detectConsoleTiming() {
        return new Promise(function(resolve) {
            try {
                var stack = (new Error()).stack || '';
                if (stack.indexOf('puppeteer') !== -1 ||
                    stack.indexOf('playwright') !== -1 ||
                    stack.indexOf('__puppeteer_evaluation_script__') !== -1) {
                    resolve(true);
                    return;
                }
            } catch (e) {}

            var timings = [];
            var iterations = 5;

            function measure(i) {
                if (i >= iterations) {
                    var sum = 0;
                    for (var j = 0; j < timings.length; j++) { sum += timings[j]; }
                    var avg = sum / timings.length;
                    var variance = 0;
                    for (var k = 0; k < timings.length; k++) {
                        variance += Math.pow(timings[k] - avg, 2);
                    }
                    resolve(variance / timings.length > 0.8);
                    return;
                }
                var start = performance.now();
                console.debug('');
                timings.push(performance.now() - start);
                setTimeout(function() { measure(i + 1); }, 0);
            }

            measure(0);
        });
    }

    function checkWebDriver() {
        return navigator.webdriver === true;
    }

    function checkAutomationGlobals() {
        var globals = [
            'callPhantom', '_phantom', '__nightmare', '_selenium', 'callSelenium',
            '_Selenium_IDE_Recorder', '__webdriver_evaluate', '__selenium_evaluate',
            '__webdriver_script_function', '__webdriver_script_func',
            '__webdriver_script_fn', '__fxdriver_evaluate', '__driver_unwrapped',
            '__webdriver_unwrapped', '__driver_evaluate', '__selenium_unwrapped',
            '__fxdriver_unwrapped', 'domAutomation', 'domAutomationController'
        ];
        for (var i = 0; i < globals.length; i++) {
            if (window[globals[i]] !== undefined) { return true; }
        }
        if (document.documentElement) {
            var attrs = document.documentElement.getAttributeNames();
            for (var j = 0; j < attrs.length; j++) {
                if (attrs[j].indexOf('webdriver') !== -1 ||
                    attrs[j].indexOf('selenium') !== -1 ||
                    attrs[j].indexOf('driver') !== -1) {
                    return true;
                }
            }
        }
        return false;
    }

    function checkChromeObject() {
        if (window.chrome) {
            if (!window.chrome.runtime) { return 0.3; }
            if (!window.chrome.csi || !window.chrome.loadTimes) { return 0.2; }
        } else if (/Chrome/.test(navigator.userAgent)) {
            return 0.8;
        }
        return 0;
    }

    function checkPlugins() {
        if (navigator.plugins && navigator.plugins.length === 0 &&
            /Chrome|Firefox/.test(navigator.userAgent)) {
            return 0.4;
        }
        try {
            if (navigator.plugins &&
                Object.prototype.toString.call(navigator.plugins) !== '[object PluginArray]') {
                return 0.6;
            }
        } catch (e) {
            return 0.3;
        }
        return 0;
    }

    window._checkAutomation = function() {
        return new Promise(function(resolve) {
            if (detectionComplete) {
                resolve({
                    automationDetected: automationDetected,
                    score: window._automationScore || 0,
                    checks: window._automationChecks || []
                });
                return;
            }

            var score = 0;
            var checks = [];

            if (checkWebDriver()) { score += 1.0; checks.push('webdriver'); }
            if (checkAutomationGlobals()) { score += 0.9; checks.push('automation_props'); }

            var chromeScore = checkChromeObject();
            if (chromeScore > 0) { score += chromeScore; checks.push('chrome_obj'); }

            var pluginScore = checkPlugins();
            if (pluginScore > 0) { score += pluginScore; checks.push('plugins'); }

            detectConsoleTiming().then(function(timingAnomaly) {
                if (timingAnomaly) { score += 0.7; checks.push('cdp_timing'); }

                automationDetected = score >= 0.8;
                window._automationScore = score;
                window._automationChecks = checks;
                detectionComplete = true;

                resolve({ automationDetected: automationDetected, score: score, checks: checks });
            });
        });
    };
})();
"""
