"""Entry point for `python -m clinical_evidence`.

Delegates to `python -m clinical_evidence.pipeline`, which runs the evidence search CLI.
"""
import runpy
runpy.run_module("clinical_evidence.pipeline", run_name="__main__", alter_sys=True)
