"""
Credit Costs

How many credits each metered action consumes. Callers debit the result
through the Balance Engine.
"""

import math

CREDITS_PER_VIDEO_MINUTE = 1
QUESTIONS_PER_QUIZ_CREDIT = 5
CREDITS_PER_AI_QUESTION = 1


def video_upload_cost(duration_seconds: float) -> int:
    """1 credit per started minute of video."""
    if duration_seconds < 0:
        raise ValueError("duration cannot be negative")
    return math.ceil(duration_seconds / 60) * CREDITS_PER_VIDEO_MINUTE


def quiz_generation_cost(num_questions: int = 5) -> int:
    """1 credit per 5 questions, never less than 1 (1-5 => 1, 6-10 => 2)."""
    return max(1, math.ceil(num_questions / QUESTIONS_PER_QUIZ_CREDIT))


def ai_chat_cost() -> int:
    return CREDITS_PER_AI_QUESTION
