# estimates the hessian's leading eigen values-vectors using the gradient covariance approximation
# (one streaming eigen-estimator per parameter group, fed with per-example gradients)
import os
import random
import sys
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch
import tyro
from torch.utils.tensorboard import SummaryWriter

from gradpca_utils.datasets import class_format, load_matrix
from gradpca_utils.models import load_model, make_criterion
from gradpca_utils.pca import GradientEigenTracker, GradientSource
from gradpca_utils.pca.io import write_eigenvalues, write_eigenvectors


@dataclass
class Args:
    n_inputs: int
    """number of inputs"""
    n_classes: int
    """number of targets"""
    data_filename: str
    """filename for the data (inputs followed by the class index on every row)"""
    exp_name: str = os.path.basename(__file__)[: -len(".py")]
    """the name of this experiment"""
    seed: int = 1
    """seed of the experiment"""
    torch_deterministic: bool = True
    """if toggled, `torch.backends.cudnn.deterministic=False`"""
    cuda: bool = True
    """if toggled, cuda will be enabled by default"""
    track: bool = False
    """if toggled, this experiment will be tracked with Weights and Biases"""
    wandb_project_name: str = "gradpca"
    """the wandb's project name"""
    wandb_entity: str = None
    """the entity (team) of wandb's project"""

    # Model arguments
    model_filename: str = ""
    """the model state_dict filename (random initialization if empty)"""
    hidden_sizes: tuple[int, ...] = (32,)
    """hidden layer sizes of the MLP"""
    criterion_type: str = "class-nll"
    """the type of the criterion: 'class-nll' or 'mse'"""

    # Estimator arguments
    n_eigen: int = 10
    """number of eigen values in the low rank estimate"""
    minibatch_size: int = 10
    """number of observations before a reevaluation"""
    gamma: float = 0.999
    """discount factor"""
    lam: float = 1e-3
    """regularizer of the initial Gram matrix"""
    iterations: int = 1
    """number of iterations over the data"""

    # Data arguments
    max_load: int = -1
    """max number of examples to load (-1 loads everything)"""
    header: bool = False
    """if toggled, the text data file starts with a `n_rows n_cols` line"""
    output_dir: str = ""
    """directory for the per-group eigenvalues/eigenvectors files (skipped if empty)"""
    embed_directions: bool = True
    """if toggled, also write unit-norm eigenvectors embedded in the full parameter space"""


if __name__ == "__main__":

    args = tyro.cli(Args)
    run_name = f"{Path(args.data_filename).stem}__{args.exp_name}__{args.seed}__{int(time.time())}"
    if args.track:
        import wandb

        wandb.init(
            project=args.wandb_project_name,
            entity=args.wandb_entity,
            sync_tensorboard=True,
            config=vars(args),
            name=run_name,
            save_code=True,
        )
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

    # model and criterion
    model = load_model(args.model_filename, args.n_inputs, list(args.hidden_sizes), args.n_classes, device)
    criterion = make_criterion(args.criterion_type, args.n_classes)

    source = GradientSource(model, criterion, inputs, targets)
    print(f"{len(source.group_dims)} groups of parameters.")
    tracker = GradientEigenTracker(
        source,
        n_eigen=args.n_eigen,
        minibatch_size=args.minibatch_size,
        gamma=args.gamma,
        lam=args.lam,
        device=device,
    )

    tick = 1

    def progress(done, total):
        global tick
        if done / total > tick / 100.0:
            print(".", end="")
            sys.stdout.flush()
            tick += 1

    start_time = time.time()
    tracker.run(iterations=args.iterations, callback=progress)
    print()
    global_step = args.iterations * len(source)
    writer.add_scalar("charts/SPS", int(global_step / (time.time() - start_time)), global_step)
    tracker.log_to_tensorboard(writer, global_step)

    if args.output_dir:
        output_dir = Path(args.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

    leading = tracker.leading_eigen()
    offset = 0
    for name, dim in source.group_dims.items():
        print(f"{name}: {dim} parameters.")
        if name not in leading:
            print("  skipped (a single parameter has no low-rank estimate)")
            offset += dim
            continue
        eigenvalues, eigenvectors = leading[name]
        for value in eigenvalues.tolist():
            print(value)

        if args.output_dir:
            write_eigenvalues(output_dir / f"{name}_eigenvalues.txt", eigenvalues)
            write_eigenvectors(output_dir / f"{name}_eigenvectors.txt", eigenvectors)
            if args.embed_directions:
                # zero everywhere except on this group's slice of the parameter vector
                directions = torch.zeros((eigenvectors.shape[0], source.dim), dtype=eigenvectors.dtype)
                directions[:, offset : offset + dim] = eigenvectors.cpu()
                write_eigenvectors(output_dir / f"{name}_directions.txt", directions, normalize=True)
        offset += dim

    writer.close()
