from pathlib import Path
from setuptools import find_packages, setup


def load_requirements(path: str) -> list[str]:
	requirements: list[str] = []
	for line in (Path(__file__).parent / path).read_text(encoding="utf-8").splitlines():
		entry = line.strip()
		if not entry or entry.startswith("#"):
			continue
		requirements.append(entry)
	return requirements


# get version from __version__ variable in report_desk/__init__.py
def get_version():
	init_file = Path(__file__).parent / "report_desk" / "__init__.py"
	for line in init_file.read_text(encoding="utf-8").splitlines():
		if line.startswith("__version__"):
			return line.split("=")[1].strip().strip('"').strip("'")
	return "0.0.1"

version = get_version()

setup(
	name="report_desk",
	version=version,
	description="Telegram bot for submitting and approving financial order reports",
	packages=find_packages(exclude=["tests", "tests.*"]),
	zip_safe=False,
	include_package_data=True,
	python_requires=">=3.9",
	install_requires=load_requirements("requirements.txt"),
	extras_require={
		"test": ["pytest>=7.4", "pytest-asyncio>=0.21", "httpx>=0.25"],
	},
	entry_points={
		"console_scripts": ["report-desk=report_desk.api:main"],
	},
)
