"""Static metadata describing the exam portal."""

APP_NAME = "Exam Portal"
APP_VERSION = "0.1"
APP_LICENSE = "MIT License"
APP_ABOUT_TEXT = (
    "Exam Portal schedules multiple-choice school exams, decides who may take them "
    "and when, runs timed attempts and records one submission per student per exam."
)
