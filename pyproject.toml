[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "digcore"
version = "0.1.0"
description = "AI-assisted diagnosis core: tool registry, prompts, chat loop and diagnosis records for monitoring agents"
requires-python = ">=3.10"
dependencies = []
keywords = ["monitoring", "diagnosis", "ai", "tools", "alerting", "inspection"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["digcore"]

[tool.pytest.ini_options]
addopts = "-ra"
