[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cloudcost-azure"
version = "0.1.0"
description = "Hourly cost metrics for the virtual machines of Azure Kubernetes Service clusters"
requires-python = ">=3.10"
dependencies = []
keywords = ["azure", "aks", "cost", "prometheus", "metrics", "kubernetes"]
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
packages = ["cloudcost_azure"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
