import subprocess
import sys
import os
from pathlib import Path

def main():
    project_root = Path(__file__).parent.parent
    os.chdir(project_root)

    # Ensure src is in python path
    env = os.environ.copy()
    src_path = str(project_root / "src")
    if "PYTHONPATH" in env:
        env["PYTHONPATH"] = f"{src_path}{os.pathsep}{env['PYTHONPATH']}"
    else:
        env["PYTHONPATH"] = src_path

    print("Starting Shopping Assistant API (FastAPI)...")
    try:
        # The app is built by the factory so the catalog and rules load once per worker
        subprocess.run([
            sys.executable, "-m", "uvicorn",
            "shopping_assistant.api.main:create_app",
            "--factory",
            "--host", env.get("SHOPPING_ASSISTANT_HOST", "0.0.0.0"),
            "--port", env.get("SHOPPING_ASSISTANT_PORT", "8000"),
            "--reload"
        ], env=env)
    except KeyboardInterrupt:
        print("\nAPI stopped.")

if __name__ == "__main__":
    main()
