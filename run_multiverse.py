"""
run_multiverse.py

Entry point of a logoverse multiverse analysis, driven by Hydra.

The script

1. loads a grouped data set from CSV, or simulates an epilepsy-style one
   (``conf/data/``);
2. builds the grid of candidate models spanned by the modelling choices
   (``conf/multiverse/``);
3. fits every candidate with NUTS in parallel, reusing cached fits
   (``conf/inference/``);
4. computes the predictive criteria of every candidate
   (``conf/evaluation/``);
5. filters the multiverse by computational soundness and predictive
   performance (``conf/filtering/``), then computes the expensive criteria
   (integrated PSIS, exact, bridge or Laplace LOGO) on the retained models;
6. pickles the ``ModelComparison`` and ``FilterResult`` into the Hydra output
   directory.

Typical usage:

    $ python run_multiverse.py data=csv data.path=epilepsy.csv \
        inference.n_samples=500 evaluation.retained_criteria=[exact_logo]
"""

import os
import pickle

import hydra
from hydra.core.hydra_config import HydraConfig
from omegaconf import DictConfig, OmegaConf

from logoverse import (
    FilterConfig,
    InferenceConfig,
    ModelChoices,
    build_model_grid,
    compare_models,
    filter_multiverse,
    fit_multiverse,
    load_grouped_data,
    simulate_repeated_counts,
)
from logoverse.mc import evaluate_criterion
from logoverse.multiverse import grid_to_frame
from logoverse.utils import console


def _load_data(data_cfg):
    if data_cfg.source == "simulate":
        return simulate_repeated_counts(
            **OmegaConf.to_container(data_cfg.simulate, resolve=True)
        )
    if data_cfg.source == "csv":
        return load_grouped_data(
            hydra.utils.to_absolute_path(data_cfg.path),
            response=data_cfg.response,
            group=data_cfg.group,
            standardize=data_cfg.get("standardize"),
        )
    raise ValueError(
        f"Unknown data source '{data_cfg.source}'; use 'simulate' or 'csv'."
    )


def _model_choices(cfg: DictConfig) -> ModelChoices:
    choices_kwargs = OmegaConf.to_container(cfg.multiverse, resolve=True)
    choices_kwargs.pop("name", None)
    return ModelChoices(
        response=cfg.data.response, group=cfg.data.group, **choices_kwargs
    )


def run_analysis(cfg: DictConfig, output_dir: str) -> str:
    """Run the whole analysis for ``cfg`` and return the results file."""
    print("=" * 80)
    print("🌌 LOGOVERSE MULTIVERSE ANALYSIS")
    print("=" * 80)
    print(f"📁 Working directory: {os.getcwd()}")
    print("\n📋 Configuration:")
    print("-" * 40)
    print(OmegaConf.to_yaml(cfg))

    cache_dir = cfg.get("cache_dir")

    # ==========================================================================
    # Data Loading Section
    # ==========================================================================
    print("\n" + "=" * 80)
    print("📊 DATA LOADING")
    print("=" * 80)

    data = _load_data(cfg.data)
    print(f"✅ Data loaded: {data}")

    # ==========================================================================
    # Model Grid Section
    # ==========================================================================
    print("\n" + "=" * 80)
    print("🧩 MODEL GRID")
    print("=" * 80)

    specs = build_model_grid(_model_choices(cfg))
    print(f"🔢 {len(specs)} candidate models")
    print(grid_to_frame(specs)[["family", "prior", "formula"]].to_string())

    # ==========================================================================
    # Model Fitting Section
    # ==========================================================================
    print("\n" + "=" * 80)
    print("🧠 MODEL FITTING")
    print("=" * 80)

    config = InferenceConfig(**OmegaConf.to_container(cfg.inference))
    fits = fit_multiverse(
        specs,
        data,
        config,
        n_jobs=cfg.n_jobs,
        cache_dir=cache_dir,
        overwrite=cfg.overwrite,
    )
    print("✅ All models fitted!")

    # ==========================================================================
    # Evaluation Section
    # ==========================================================================
    print("\n" + "=" * 80)
    print("📏 PREDICTIVE EVALUATION")
    print("=" * 80)

    eval_cfg = cfg.evaluation
    eval_kwargs = dict(
        method=eval_cfg.method,
        n_nodes=eval_cfg.n_nodes,
        max_draws=eval_cfg.max_draws,
    )
    filter_config = FilterConfig(**OmegaConf.to_container(cfg.filtering))
    criteria = list(eval_cfg.criteria)
    if filter_config.criterion.value not in criteria:
        criteria.append(filter_config.criterion.value)
    comparison = compare_models(fits, data, criteria=criteria, **eval_kwargs)
    for criterion in comparison.criteria:
        print(comparison.summary(criterion))
        print()

    # ==========================================================================
    # Filtering Section
    # ==========================================================================
    print("\n" + "=" * 80)
    print("🔍 MULTIVERSE FILTERING")
    print("=" * 80)

    filtered = filter_multiverse(comparison, config=filter_config)
    print(filtered.summary())

    retained = None
    retained_criteria = list(eval_cfg.retained_criteria)
    if retained_criteria:
        print("\n🔬 Evaluating retained models...")
        retained = comparison.subset(filtered.retained)
        retained_fits = [
            fits[comparison.model_names.index(name)]
            for name in filtered.retained
        ]
        for criterion in retained_criteria:
            console.print(f"[dim]Computing {criterion}...[/dim]")
            retained.add_criterion(
                criterion,
                [
                    evaluate_criterion(
                        criterion,
                        fit,
                        data,
                        n_jobs=cfg.n_jobs,
                        cache_dir=cache_dir,
                        **eval_kwargs,
                    )
                    for fit in retained_fits
                ],
            )
            print(retained.summary(criterion))
            print()

    # ==========================================================================
    # Results Saving Section
    # ==========================================================================
    print("\n" + "=" * 80)
    print("💾 SAVING RESULTS")
    print("=" * 80)

    output_file = os.path.join(output_dir, "logoverse_results.pkl")
    print(f"📁 Output directory: {output_dir}")
    print(f"💾 Saving results to: {output_file}")
    with open(output_file, "wb") as f:
        pickle.dump(
            {
                "comparison": comparison,
                "filter": filtered,
                "retained_comparison": retained,
                "specs": specs,
            },
            f,
        )
    print("✅ Results saved successfully!")
    return output_file


@hydra.main(version_base=None, config_path="conf", config_name="config")
def main(cfg: DictConfig) -> None:
    run_analysis(cfg, HydraConfig.get().runtime.output_dir)


if __name__ == "__main__":
    main()
