from __future__ import annotations

from enum import Enum

SYSTEM_PROMPT = """You are a football match score predictor. Predict the final score of every match listed by the user.

IMPORTANT: respond with ONLY valid JSON in this exact format:
[{"match_id": "<id>", "home_score": <integer>, "away_score": <integer>}]

Rules:
- one entry per match_id given by the user, no extra entries
- home_score and away_score are integers between 0 and 20
- no explanation, no markdown, no code blocks"""

ANALYSIS_HEADER = """Analyze the match data and predict the final score.

DATA FORMAT: win probabilities (%), odds (lower = more likely), H2H, advice.
KEY FACTORS: home advantage (~0.4 goals), form, H2H, odds consensus.
"""


class PromptVariant(str, Enum):
    PLAIN = "plain"
    LANGUAGE_ENFORCEMENT = "language_enforcement"
    JSON_EMPHASIS = "json_emphasis"
    MINIMAL = "minimal"
    LANGUAGE_MINIMAL = "language_minimal"


_LANGUAGE_SUFFIX = "\n\nCRITICAL: Respond ONLY in English. Do not output Chinese or any other language."

_JSON_SUFFIX = """

OUTPUT FORMAT - CRITICAL:
- Return ONLY valid JSON
- No explanations
- No markdown code blocks
- No natural language
- Just the raw JSON array"""

_MINIMAL_SUFFIX = """

- Do NOT use <think>, <thinking>, or <reasoning> tags
- Output ONLY the JSON prediction
- No thinking process"""

_SUFFIXES = {
    PromptVariant.PLAIN: "",
    PromptVariant.LANGUAGE_ENFORCEMENT: _LANGUAGE_SUFFIX,
    PromptVariant.JSON_EMPHASIS: _JSON_SUFFIX,
    PromptVariant.MINIMAL: _MINIMAL_SUFFIX,
    PromptVariant.LANGUAGE_MINIMAL: _LANGUAGE_SUFFIX + _MINIMAL_SUFFIX,
}


def system_prompt(variant: PromptVariant) -> str:
    return SYSTEM_PROMPT + _SUFFIXES[PromptVariant(variant)]


def _pct(value) -> str:
    return f"{value}%" if value is not None else "n/a"


def _match_block(match, analysis) -> list[str]:
    kickoff = match.kickoff.strftime("%Y-%m-%d %H:%M UTC")
    lines = [
        f"match_id: {match.id}",
        f"{match.home_team} vs {match.away_team} | {match.competition or 'n/a'} | {kickoff}",
    ]
    if analysis is None:
        lines.append("No pre-match analysis available.")
        return lines
    lines.append(
        "Win probability: home {} | draw {} | away {}".format(
            _pct(analysis.home_win_pct), _pct(analysis.draw_pct), _pct(analysis.away_win_pct)
        )
    )
    if analysis.odds_home is not None:
        lines.append(f"Odds: {analysis.odds_home} / {analysis.odds_draw} / {analysis.odds_away}")
    if analysis.h2h_summary:
        lines.append(f"H2H: {analysis.h2h_summary}")
    if analysis.advice:
        lines.append(f"Advice: {analysis.advice}")
    return lines


def build_user_prompt(matches: list, analyses: dict) -> str:
    """Static header first, match-specific data last."""
    lines = [ANALYSIS_HEADER, "---"]
    for match in matches:
        lines.extend(_match_block(match, analyses.get(str(match.id))))
        lines.append("")
    ids = ", ".join(str(m.id) for m in matches)
    lines.append(f"Respond with ONLY the JSON array for match_id(s): {ids}")
    return "\n".join(lines)
