# evaluates a model around its current parameter values in directions given in input
# (usually the hessian's eigen vectors or their approximation from hessian_estimator.py)
import os
import random
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch
import tyro
from torch.utils.tensorboard import SummaryWriter

from gradpca_utils.datasets import class_format, load_matrix
from gradpca_utils.directions import evaluate_cost_along_direction
from gradpca_utils.models import load_model
from gradpca_utils.pca import count_parameters, group_parameters, load_directions


@dataclass
class Args:
    n_inputs: int
    """number of inputs"""
    n_classes: int
    """number of targets"""
    data_filename: str
    """filename for the data (inputs followed by the class index on every row)"""
    directions_filename: str
    """name of the file containing the directions, one per line"""
    data_label: str = "train"
    """label for the data, ie train/test. Used for naming the output files"""
    exp_name: str = os.path.basename(__file__)[: -len(".py")]
    """the name of this experiment"""
    seed: int = 1
    """seed of the experiment"""
    torch_deterministic: bool = True
    """if toggled, `torch.backends.cudnn.deterministic=False`"""
    cuda: bool = True
    """if toggled, cuda will be enabled by default"""

    # Model arguments
    model_filename: str = ""
    """the model state_dict filename (random initialization if empty)"""
    hidden_sizes: tuple[int, ...] = (32,)
    """hidden layer sizes of the MLP"""

    # Exploration arguments
    n_directions: int = 6
    """number of directions to explore (first from the file)"""
    n_steps_oneside: int = 10
    """how many evaluations to perform on each side of a direction"""
    stepsize: float = 1e-4
    """stepsize in parameter space"""

    # Data arguments
    max_load: int = -1
    """max number of examples to load (-1 loads everything)"""
    header: bool = False
    """if toggled, the text data file starts with a `n_rows n_cols` line"""
    output_dir: str = "."
    """directory under which the `stepsize=<stepsize>` result directory is created"""


if __name__ == "__main__":

    args = tyro.cli(Args)
    run_name = f"{Path(args.data_filename).stem}__{args.exp_name}__{args.seed}__{int(time.time())}"
    writer = SummaryWriter(f"runs/{run_name}")
    writer.add_text(
        "hyperparameters",
        "|param|value|\n|-|-|\n%s" % ("\n".join([f"|{key}|{value}|" for key, value in vars(args).items()])),
    )

    # TRY NOT TO MODIFY: seeding
    random.seed(args.seed)
    np.random.seed(args.seed)
    torch.manual_seed(args.seed)
    torch.backends.cudnn.deterministic = args.torch_deterministic

    device = torch.device("cuda" if torch.cuda.is_available() and args.cuda else "cpu")

    # data
    matrix = load_matrix(args.data_filename, n_cols=args.n_inputs + 1, max_load=args.max_load, header=args.header)
    inputs, targets = class_format(matrix, args.n_inputs, args.n_classes)
    inputs, targets = inputs.to(device), targets.to(device)

    model = load_model(args.model_filename, args.n_inputs, list(args.hidden_sizes), args.n_classes, device)
    params = [p for group in group_parameters(model).values() for p in group]
    n_params = count_parameters(params)
    print(f"{n_params} parameters.")

    directions = load_directions(args.directions_filename, args.n_directions, n_params).to(device)

    result_dir = Path(args.output_dir) / f"stepsize={args.stepsize}"
    result_dir.mkdir(parents=True, exist_ok=True)

    for i in range(args.n_directions):
        profile = evaluate_cost_along_direction(
            model, params, directions[i], inputs, targets,
            n_steps_oneside=args.n_steps_oneside,
            stepsize=args.stepsize,
        )
        np.savetxt(result_dir / f"{args.data_label}_nll_dir{i}.txt", np.array(profile.nll), fmt="%.10g")
        np.savetxt(result_dir / f"{args.data_label}_class_dir{i}.txt", np.array(profile.class_error), fmt="%.10g")
        for step, (nll, class_error) in enumerate(zip(profile.nll, profile.class_error)):
            writer.add_scalar(f"cost/{args.data_label}_nll_dir{i}", nll, step)
            writer.add_scalar(f"cost/{args.data_label}_class_dir{i}", class_error, step)
        print(f"direction={i}, nll_min={min(profile.nll):.6g}, nll_max={max(profile.nll):.6g}")

    writer.close()
