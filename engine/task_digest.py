from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class TaskReport:
    index: int
    task: str
    assistant: str
    output: str
    failed: bool = False


@dataclass
class TaskDigest:
    """Running record of finished subtasks, fed forward into each later subtask."""

    total: int
    reports: list[TaskReport] = field(default_factory=list)

    def record(self, report: TaskReport) -> None:
        self.reports.append(report)

    def previous_results(self) -> str:
        if not self.reports:
            return ""
        blocks = "\n\n".join(f"Result of task {report.index + 1}:\n{report.output}" for report in self.reports)
        return f"\n\nPrevious task results:\n{blocks}"

    def task_header(self, index: int, task: str) -> str:
        return f"Current task ({index + 1}/{self.total}): {task}"

    def merged(self) -> str:
        sections = [
            f"Task {report.index + 1}: {report.task}\n"
            f"(Assistant: {report.assistant})\n"
            f"Result:\n{report.output}\n"
            for report in self.reports
        ]
        return "Final execution results:\n" + "\n".join(sections)
