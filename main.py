"""Main entry point: deterministic replay of recorded scan cycles."""
import argparse
import sys
from dataclasses import replace
from typing import Dict, List, Optional

import pandas as pd
from pydantic import ValidationError as SchemaValidationError

from utils.logging import setup_logging
from config.settings import get_config
from agents.control_plane_agent import ControlPlaneAgent, EntryRequest, ScanCycle
from core.capital_concentration import ExtendedTrancheRequest, TrancheRequest
from core.control_plane import ControlPlane
from models.cycle_schemas import CycleRow
from models.enums import AggressionLevel
from utils.clock import ManualClock
from utils.exceptions import ControlPlaneError

import logging

logger = logging.getLogger(__name__)


def build_request(row: CycleRow) -> TrancheRequest:
    """Entry request for a row; extended when every tranche 2/3 input is present."""
    base = TrancheRequest(
        pool_address=row.pool_address,
        aggression_level=AggressionLevel.from_string(row.aggression_level),
        ods_value=row.ods_value,
        spike_active=row.spike_active
    )
    if not row.has_extended_inputs:
        return base
    return ExtendedTrancheRequest(
        pool_address=base.pool_address,
        aggression_level=base.aggression_level,
        ods_value=base.ods_value,
        spike_active=base.spike_active,
        ev_usd=row.ev_usd,
        fee_intensity=row.fee_intensity,
        vsh_eligible=row.vsh_eligible,
        adverse_selection_penalty=row.adverse_selection_penalty,
        expected_fee_rate_usd_hour=row.expected_fee_rate_usd_hour
    )


def load_cycles(path: str) -> List[CycleRow]:
    """
    Read and validate a replay CSV.

    Raises:
        ControlPlaneError: If a row fails schema validation
    """
    frame = pd.read_csv(path)
    rows = []
    for index, record in enumerate(frame.to_dict(orient="records")):
        try:
            rows.append(CycleRow.model_validate(record))
        except SchemaValidationError as e:
            raise ControlPlaneError(
                f"Invalid replay row {index + 2} in {path}",
                details={"row": index + 2, "errors": e.errors()}
            )
    rows.sort(key=lambda r: r.timestamp)
    return rows


def replay(rows: List[CycleRow], strict: Optional[bool] = None) -> Dict[str, object]:
    """
    Drive the control plane through recorded cycles.

    The clock is pinned to each row's timestamp. Admitted entries are
    assumed filled at their final admissible size.

    Returns:
        Summary of the run
    """
    config = get_config()
    if strict is not None:
        config = replace(config, strict_invariants=strict)
    if not rows:
        return {"cycles": 0, "flips": 0, "fills": 0}

    clock = ManualClock(start=rows[0].timestamp)
    control_plane = ControlPlane(config=config, clock=clock)
    agent = ControlPlaneAgent(control_plane)

    flips = 0
    fills = 0
    for row in rows:
        clock.set(row.timestamp)
        cycle = ScanCycle(regime_signal=row.regime, total_equity_usd=row.total_equity_usd)
        request = None
        if row.has_entry_request:
            request = build_request(row)
            cycle.entry_requests.append(EntryRequest(request=request, base_size_usd=row.base_size_usd))

        report = agent.process(cycle)
        if report.regime_update.flipped:
            flips += 1
            logger.info(
                f"{row.timestamp.isoformat()} regime {report.regime_update.previous_regime.value} "
                f"→ {report.regime_update.regime.value}"
            )
        for entry in report.admitted_entries:
            tranche_id = f"{entry.pool_address}-{clock.now():%Y%m%d%H%M%S}"
            if agent.on_tranche_filled(request, tranche_id, entry.decision.final_size_usd):
                fills += 1

    summary = {
        "cycles": len(rows),
        "flips": flips,
        "fills": fills,
        "final_regime": control_plane.regime_tracker.current_regime.value,
        "deployment": control_plane.concentration.deployment_summary(),
        "invariant_violations": control_plane.invariants.violation_count,
    }
    logger.info(
        f"Replay complete: {summary['cycles']} cycles, {flips} flips, {fills} fills, "
        f"final regime {summary['final_regime']}, "
        f"deployed {control_plane.concentration.total_deployed_pct():.2%}"
    )
    return summary


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the control plane replay."""
    parser = argparse.ArgumentParser(description="Replay recorded scan cycles through the control plane")
    parser.add_argument("--replay", required=True, metavar="CSV",
                        help="CSV of cycles (timestamp, regime, optional entry columns)")
    parser.add_argument("--strict", action="store_true",
                        help="Make invariant violations fatal")
    args = parser.parse_args(argv)

    setup_logging(get_config())
    try:
        rows = load_cycles(args.replay)
        replay(rows, strict=True if args.strict else None)
    except ControlPlaneError as e:
        logger.error(f"❌ Replay aborted: {e}", extra={"event": "replay_failed", **e.to_log_fields()})
        return 1
    except FileNotFoundError as e:
        logger.error(f"Replay file not found: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
