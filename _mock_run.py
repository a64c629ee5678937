import os
import tempfile

os.environ.setdefault("KIDNEY_HTE_USE_SIMULATED", "1")
os.environ.setdefault("KIDNEY_HTE_N_BOOT", "50")
os.environ.setdefault("KIDNEY_HTE_OUTPUT_DIR", tempfile.mkdtemp(prefix="kidney_hte_mock_"))

from kidney_hte_pipeline.main import main  # noqa: E402

if __name__ == "__main__":
    result = main()
    print(f"Outputs written to {result.output_dir}")
    if not result.failures.empty:
        print(result.failures.to_string(index=False))
    print("MOCK_RUN_SUCCESS")
