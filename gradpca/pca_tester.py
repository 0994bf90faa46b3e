# streams the rows of a data matrix through the streaming eigen-estimator and prints the leading eigenvalues
import os
import random
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch
import tyro
from torch.utils.tensorboard import SummaryWriter

from gradpca_utils.datasets import load_matrix
from gradpca_utils.pca import MatrixSource, StreamingEigenEstimator, log_eigen_metrics
from gradpca_utils.pca.io import save_estimator, write_eigenvalues, write_eigenvectors


@dataclass
class Args:
    n_dim: int
    """dimensionality of the samples"""
    data_filename: str
    """filename for the data (`.npy` or whitespace-separated text, one sample per row)"""
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
    """directory for eigenvalues.txt, eigenvectors.txt and estimator.pt (skipped if empty)"""


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
    data = load_matrix(args.data_filename, n_cols=args.n_dim, max_load=args.max_load, header=args.header)
    source = MatrixSource(torch.from_numpy(data))
    print(f"{len(source)} samples of dimension {source.dim}")

    estimator = StreamingEigenEstimator(
        dim=args.n_dim,
        k=args.n_eigen,
        batch_size=args.minibatch_size,
        gamma=args.gamma,
        lam=args.lam,
        device=device,
    )

    start_time = time.time()
    global_step = 0
    for it in range(args.iterations):
        for i in range(len(source)):
            estimator.observe(source.observation(i))
            global_step += 1
            # a reevaluation just happened
            if estimator.buffer_index == 0:
                eigenvalues, eigenvectors = estimator.get_leading_eigen()
                log_eigen_metrics(writer, global_step, "data", eigenvalues, eigenvectors, estimator.observation_count)
        print(f"iteration={it}, observations={global_step}, SPS={int(global_step / (time.time() - start_time))}")
    writer.add_scalar("charts/SPS", int(global_step / (time.time() - start_time)), global_step)

    # Grab and print the eigen values
    eigenvalues, eigenvectors = estimator.get_leading_eigen()
    for value in eigenvalues.tolist():
        print(value)

    if args.output_dir:
        output_dir = Path(args.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        write_eigenvalues(output_dir / "eigenvalues.txt", eigenvalues)
        write_eigenvectors(output_dir / "eigenvectors.txt", eigenvectors)
        save_estimator(estimator, output_dir / "estimator.pt")

    writer.close()
