from __future__ import annotations

from collections import Counter
from typing import Dict, List

from deliberation.data.gateway import PersistenceGateway
from deliberation.schemas.control import (
    Phase1Aggregate,
    Phase2Result,
    ResultsResponse,
    SubmissionCount,
)
from deliberation.schemas.records import CandidateRecord, VoteValue


class ResultsManager:
    """Read-only facilitator aggregates over votes and ballots."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    def _candidates_in_role_order(self, session_id: str) -> List[CandidateRecord]:
        role_rank = {
            role.id: index for index, role in enumerate(self.gateway.list_roles(session_id))
        }
        candidates = self.gateway.list_candidates(session_id)
        return sorted(
            candidates,
            key=lambda c: (role_rank.get(c.role_id, len(role_rank)), c.slide_order, c.name),
        )

    def phase1_aggregates(self, session_id: str) -> List[Phase1Aggregate]:
        self.gateway.require_session(session_id)
        tallies: Dict[str, Counter] = {}
        for vote in self.gateway.list_votes(session_id):
            tallies.setdefault(vote.candidate_id, Counter())[vote.vote] += 1

        results: List[Phase1Aggregate] = []
        for candidate in self._candidates_in_role_order(session_id):
            tally = tallies.get(candidate.id, Counter())
            strong_yes = tally[VoteValue.STRONG_YES]
            yes = tally[VoteValue.YES]
            no = tally[VoteValue.NO]
            total = strong_yes + yes + no
            results.append(
                Phase1Aggregate(
                    candidate_id=candidate.id,
                    candidate_name=candidate.name,
                    role_id=candidate.role_id,
                    strong_yes=strong_yes,
                    yes=yes,
                    no=no,
                    total=total,
                    percent_yes=round((strong_yes + yes) / max(total, 1) * 100, 1),
                    advanced_to_phase2=candidate.advanced_to_phase2,
                    admin_bucket=candidate.admin_bucket,
                )
            )
        return results

    def phase2_results(self, session_id: str) -> List[Phase2Result]:
        self.gateway.require_session(session_id)
        ballots = self.gateway.list_ballots(session_id)
        inclusions = Counter(
            selection.candidate_id
            for selection in self.gateway.list_selections(ballot.id for ballot in ballots)
        )
        role_rank = {
            role.id: index for index, role in enumerate(self.gateway.list_roles(session_id))
        }
        eligible = self.gateway.list_candidates(session_id, eligible_only=True)
        rows = [
            Phase2Result(
                candidate_id=candidate.id,
                candidate_name=candidate.name,
                role_id=candidate.role_id,
                inclusions=inclusions.get(candidate.id, 0),
            )
            for candidate in eligible
        ]
        rows.sort(
            key=lambda row: (
                role_rank.get(row.role_id, len(role_rank)),
                -row.inclusions,
                row.candidate_name,
            )
        )
        return rows

    def submission_counts(self, session_id: str) -> List[SubmissionCount]:
        self.gateway.require_session(session_id)
        ballots = self.gateway.list_ballots(session_id)
        counts = []
        for role in self.gateway.list_roles(session_id):
            role_ballots = [ballot for ballot in ballots if ballot.role_id == role.id]
            counts.append(
                SubmissionCount(
                    role_id=role.id,
                    role_name=role.name,
                    ballots=len(role_ballots),
                    submitted=sum(1 for ballot in role_ballots if ballot.submitted),
                )
            )
        return counts

    def build_results(self, session_id: str) -> ResultsResponse:
        return ResultsResponse(
            session_id=session_id,
            phase1=self.phase1_aggregates(session_id),
            phase2=self.phase2_results(session_id),
            submissions=self.submission_counts(session_id),
        )
