"""Interactive secret prompting shared by tunnel auth and database passwords."""

from __future__ import annotations

from typing import Callable, Sequence

import click

SecretPrompter = Callable[[str, str, Sequence[str], Sequence[bool]], Sequence[str]]
"""``(label, instruction, questions, echos) -> answers``, one answer per question."""


def terminal_prompter(
    label: str,
    instruction: str,
    questions: Sequence[str],
    echos: Sequence[bool],
) -> list[str]:
    """Ask each question on the terminal, hiding answers whose echo flag is False."""

    if len(questions) != len(echos):
        raise ValueError("questions and echos must have the same length")
    if label or instruction:
        click.echo(f"{label}: {instruction}", err=True)
    return [
        click.prompt(
            question,
            default="",
            hide_input=not echo,
            prompt_suffix="",
            show_default=False,
            err=True,
        )
        for question, echo in zip(questions, echos)
    ]


__all__ = ["SecretPrompter", "terminal_prompter"]
