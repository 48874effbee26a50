"""ORM tables for courses, segments, plans, questions and hand-offs."""

from .pipeline import Course, CourseSegment, GenerationProgress, Question, QuestionHotspotBox, QuestionPlan, SegmentTask

__all__ = ["Course", "CourseSegment", "GenerationProgress", "Question", "QuestionHotspotBox", "QuestionPlan", "SegmentTask"]
